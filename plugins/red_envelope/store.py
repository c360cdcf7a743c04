"""
Durable storage for red envelopes and claim records.

The database is the source of truth. Two guarantees live here rather than in
process memory, so that several bot processes can share one database:

- the unique constraint on ``(envelope_id, claimant)`` is the authority on
  "one claim per person";
- ``claimed_count`` is only moved by a compare-and-set update, which bounds
  the number of claims by the envelope's ``count``.
"""

import re
import uuid
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from nonebot.log import logger
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .exceptions import AlreadyClaimed, Invalid, InternalStoreError, NotFound
from .models import (
    CENT,
    ZERO,
    ClaimRecord,
    Envelope,
    EnvelopeKind,
    ItemStack,
    Record,
    RedEnvelope,
)


_ID_PREFIX = re.compile(r"^[0-9a-f-]+$")

AmountFn = Callable[[RedEnvelope], Decimal]
DrawFn = Callable[[Session, RedEnvelope], ItemStack]


class StaleWrite(Exception):
    """A compare-and-set update lost the race, the attempt should be redone"""


class EnvelopeStore:
    def __init__(self, session_factory: sessionmaker, max_attempts: int = 100):
        self._session_factory = session_factory
        self.max_attempts = max_attempts

    # Envelopes

    def save_envelope(self, envelope: Envelope) -> None:
        with session_scope(self._session_factory, "保存红包") as session:
            session.add(
                RedEnvelope(
                    id=envelope.id,
                    sender=envelope.sender,
                    kind=envelope.kind.value,
                    total_amount=envelope.total_amount,
                    count=envelope.count,
                    note=envelope.note,
                    channel_id=envelope.channel_id,
                    created_at=envelope.created_at,
                    expires_at=envelope.expires_at,
                    closed=envelope.closed,
                    claimed_count=0,
                    claimed_amount=ZERO,
                    refunded=False,
                )
            )
            session.commit()

    def load_envelope(self, envelope_id: str) -> Optional[Envelope]:
        with session_scope(self._session_factory, "加载红包") as session:
            row = session.get(RedEnvelope, envelope_id)
            return Envelope.from_row(row) if row else None

    def delete_envelope(self, envelope_id: str) -> bool:
        with session_scope(self._session_factory, "删除红包") as session:
            row = session.get(RedEnvelope, envelope_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def find_by_prefix(self, prefix: str) -> List[Envelope]:
        prefix = prefix.strip().lower()
        if not prefix or not _ID_PREFIX.match(prefix):
            return []
        with session_scope(self._session_factory, "查找红包") as session:
            rows = (
                session.query(RedEnvelope)
                .filter(RedEnvelope.id.like(f"{prefix}%"))
                .order_by(RedEnvelope.created_at.desc())
                .limit(10)
                .all()
            )
            return [Envelope.from_row(row) for row in rows]

    def list_active(self, now: int, channel_id: Optional[str] = None) -> List[Envelope]:
        with session_scope(self._session_factory, "查询红包列表") as session:
            query = session.query(RedEnvelope).filter(
                RedEnvelope.closed == False,  # noqa: E712
                or_(RedEnvelope.expires_at == 0, RedEnvelope.expires_at > now),
            )
            if channel_id is not None:
                query = query.filter(RedEnvelope.channel_id == channel_id)
            rows = query.order_by(RedEnvelope.created_at.desc()).all()
            return [Envelope.from_row(row) for row in rows]

    def close_envelope(self, envelope_id: str) -> bool:
        """Set ``closed``; True only for the caller that actually flipped it"""
        with session_scope(self._session_factory, "更新红包状态") as session:
            result = session.execute(
                update(RedEnvelope)
                .where(
                    RedEnvelope.id == envelope_id,
                    RedEnvelope.closed == False,  # noqa: E712
                )
                .values(closed=True)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def list_refundable(self, now: int) -> List[Envelope]:
        with session_scope(self._session_factory, "查询过期红包") as session:
            rows = (
                session.query(RedEnvelope)
                .filter(
                    RedEnvelope.closed == False,  # noqa: E712
                    RedEnvelope.refunded == False,  # noqa: E712
                    RedEnvelope.expires_at > 0,
                    RedEnvelope.expires_at <= now,
                )
                .all()
            )
            return [Envelope.from_row(row) for row in rows]

    def mark_refunded(self, envelope_id: str) -> Optional[Decimal]:
        """Mark an envelope refunded and return the unreserved remainder

        Returns None when another process got there first.
        """
        with session_scope(self._session_factory, "标记红包退款") as session:
            row = session.get(RedEnvelope, envelope_id)
            if row is None or row.refunded:
                return None
            result = session.execute(
                update(RedEnvelope)
                .where(
                    RedEnvelope.id == envelope_id,
                    RedEnvelope.refunded == False,  # noqa: E712
                    RedEnvelope.claimed_count == row.claimed_count,
                )
                .values(refunded=True)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount != 1:
                return None
            remainder = Decimal(row.total_amount) - Decimal(row.claimed_amount)
            return max(ZERO, remainder).quantize(CENT)

    # Claims

    def insert_claim(
        self,
        envelope_id: str,
        claimant: str,
        now: int,
        compute_amount: AmountFn,
        draw_item: Optional[DrawFn] = None,
    ) -> Tuple[Record, Optional[ItemStack]]:
        """Reserve a slot, write the claim record and draw the item in one transaction

        Raises:
            NotFound: the envelope row is gone
            Invalid: closed, expired, refunded or no slot left
            AlreadyClaimed: the unique constraint rejected the record
            Empty: ``draw_item`` found nothing to draw
            InternalStoreError: any other database failure, outcome unknown
        """
        for attempt in range(self.max_attempts):
            with session_scope(self._session_factory, "领取红包") as session:
                row = session.get(RedEnvelope, envelope_id, with_for_update=True)
                if row is None:
                    raise NotFound(envelope_id)
                if row.expires_at > 0 and now >= row.expires_at:
                    raise Invalid(envelope_id, "expired")
                if row.closed or row.refunded or row.claimed_count >= row.count:
                    raise Invalid(envelope_id, "closed")

                kind = EnvelopeKind(row.kind)
                seen = row.claimed_count
                amount = compute_amount(row)
                claimed_amount = Decimal(row.claimed_amount)
                if kind.is_currency:
                    claimed_amount += amount

                result = session.execute(
                    update(RedEnvelope)
                    .where(
                        RedEnvelope.id == envelope_id,
                        RedEnvelope.claimed_count == seen,
                        RedEnvelope.closed == False,  # noqa: E712
                        RedEnvelope.refunded == False,  # noqa: E712
                    )
                    .values(claimed_count=seen + 1, claimed_amount=claimed_amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug(f"红包 {envelope_id} 并发冲突，重试第 {attempt + 1} 次")
                    continue

                record = ClaimRecord(
                    id=str(uuid.uuid4()),
                    envelope_id=envelope_id,
                    claimant=claimant,
                    amount=amount,
                    claimed_at=now,
                    credit_pending=kind.is_currency,
                )
                session.add(record)
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    raise AlreadyClaimed(envelope_id, claimant)

                item = None
                if draw_item is not None:
                    try:
                        item = draw_item(session, row)
                    except StaleWrite:
                        session.rollback()
                        logger.debug(f"物品快照并发冲突，重试第 {attempt + 1} 次")
                        continue

                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise AlreadyClaimed(envelope_id, claimant)
                return Record.from_row(record), item

        raise InternalStoreError(
            f"Claim on {envelope_id} gave up after {self.max_attempts} conflicts"
        )

    def has_claimed(self, envelope_id: str, claimant: str) -> bool:
        with session_scope(self._session_factory, "检查领取记录") as session:
            return (
                session.query(ClaimRecord.id)
                .filter(
                    ClaimRecord.envelope_id == envelope_id,
                    ClaimRecord.claimant == claimant,
                )
                .first()
                is not None
            )

    def count_claims(self, envelope_id: str) -> int:
        with session_scope(self._session_factory, "统计领取数量") as session:
            return (
                session.query(func.count(ClaimRecord.id))
                .filter(ClaimRecord.envelope_id == envelope_id)
                .scalar()
            ) or 0

    def get_records(self, envelope_id: str) -> List[Record]:
        with session_scope(self._session_factory, "获取领取记录") as session:
            rows = (
                session.query(ClaimRecord)
                .filter(ClaimRecord.envelope_id == envelope_id)
                .order_by(ClaimRecord.claimed_at.desc())
                .all()
            )
            return [Record.from_row(row) for row in rows]

    def get_lucky_claimant(self, envelope_id: str) -> Optional[Tuple[str, Decimal]]:
        """The claimant with the largest summed amount, earliest claim wins ties"""
        with session_scope(self._session_factory, "获取手气王") as session:
            total = func.sum(ClaimRecord.amount).label("total")
            first = func.min(ClaimRecord.claimed_at).label("first")
            row = (
                session.query(ClaimRecord.claimant, total, first)
                .filter(ClaimRecord.envelope_id == envelope_id)
                .group_by(ClaimRecord.claimant)
                .order_by(total.desc(), first.asc())
                .first()
            )
            if row is None:
                return None
            return row.claimant, Decimal(str(row.total)).quantize(CENT)

    def mark_credited(self, record_id: str) -> None:
        with session_scope(self._session_factory, "更新入账状态") as session:
            session.execute(
                update(ClaimRecord)
                .where(ClaimRecord.id == record_id)
                .values(credit_pending=False)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def get_pending_credits(self, claimed_before: int) -> List[Record]:
        with session_scope(self._session_factory, "查询待入账记录") as session:
            rows = (
                session.query(ClaimRecord)
                .filter(
                    ClaimRecord.credit_pending == True,  # noqa: E712
                    ClaimRecord.claimed_at <= claimed_before,
                )
                .order_by(ClaimRecord.claimed_at.asc())
                .all()
            )
            return [Record.from_row(row) for row in rows]
