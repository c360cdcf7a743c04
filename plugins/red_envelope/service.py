import random
import uuid
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Tuple

from nonebot.log import logger

from .cache import EnvelopeCache
from .config import Config
from .distribution import compute_amount
from .exceptions import (
    AlreadyClaimed,
    Empty,
    InsufficientBalance,
    Invalid,
    InvalidRequest,
    ItemsLocked,
    LedgerUnavailable,
    NotFound,
)
from .item_storage import ItemStorage
from .ledger import LedgerAdapter
from .models import (
    CENT,
    ZERO,
    ClaimResult,
    Envelope,
    EnvelopeCompletionInfo,
    EnvelopeKind,
    ItemStack,
    Record,
    RedEnvelope,
    now_ms,
)
from .preview import PreviewCache
from .store import EnvelopeStore


def claim_reference(record_id: str) -> str:
    return f"red_envelope_claim_{record_id}"


class RedEnvelopeService:
    """
    Creates red envelopes, hands out claims and closes envelopes once full.

    Safe to call from many threads at once. Exactly-once claiming and the
    claim count bound are enforced by the store, not by locks in here, so
    several processes can serve one database.
    """

    def __init__(
        self,
        store: EnvelopeStore,
        item_storage: ItemStorage,
        ledger: LedgerAdapter,
        config: Optional[Config] = None,
        cache: Optional[EnvelopeCache] = None,
        previews: Optional[PreviewCache] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.item_storage = item_storage
        self.ledger = ledger
        self.config = config or Config()
        self.cache = cache or EnvelopeCache()
        self.previews = previews or PreviewCache()
        self._rng = rng or random.Random()
        self._clock = clock

    # Creation

    def _validate(
        self, kind: EnvelopeKind, total_amount, count: int, note: Optional[str]
    ) -> Tuple[Decimal, Optional[str]]:
        if not isinstance(count, int) or count <= 0:
            raise InvalidRequest("红包份数必须是正整数")
        if count > self.config.red_envelope_max_count:
            raise InvalidRequest(
                f"红包份数不能超过 {self.config.red_envelope_max_count}"
            )

        note = note.strip() if note else None
        if note and len(note) > self.config.red_envelope_note_max_length:
            raise InvalidRequest(
                f"备注不能超过 {self.config.red_envelope_note_max_length} 个字符"
            )

        if kind is EnvelopeKind.ITEM:
            return ZERO, note or None

        try:
            amount = Decimal(str(total_amount))
        except (InvalidOperation, ValueError):
            raise InvalidRequest(f"红包金额不合法: {total_amount}")
        if not amount.is_finite() or amount <= 0:
            raise InvalidRequest("红包金额必须大于 0")
        if amount != amount.quantize(CENT):
            raise InvalidRequest("红包金额最多两位小数")
        if amount < self.config.red_envelope_min_amount:
            raise InvalidRequest(f"红包金额不能低于 {self.config.red_envelope_min_amount}")
        if amount > self.config.red_envelope_max_amount:
            raise InvalidRequest(f"红包金额不能超过 {self.config.red_envelope_max_amount}")
        if amount < CENT * count:
            raise InvalidRequest("红包总金额必须保证每份至少 0.01")
        return amount.quantize(CENT), note or None

    def _new_envelope(
        self,
        sender: str,
        kind: EnvelopeKind,
        total_amount: Decimal,
        count: int,
        note: Optional[str],
        channel_id: Optional[str],
        envelope_id: Optional[str] = None,
    ) -> Envelope:
        created_at = self._clock()
        ttl = self.config.red_envelope_expire_seconds
        return Envelope(
            id=envelope_id or str(uuid.uuid4()),
            sender=sender,
            kind=kind,
            total_amount=total_amount,
            count=count,
            note=note,
            channel_id=channel_id,
            created_at=created_at,
            expires_at=created_at + ttl * 1000 if ttl > 0 else 0,
            closed=False,
        )

    def _persist(self, envelope: Envelope) -> Envelope:
        self.store.save_envelope(envelope)
        self.cache.put(envelope)
        logger.info(
            f"红包已创建: id={envelope.id} kind={envelope.kind} sender={envelope.sender} "
            f"amount={envelope.total_amount} count={envelope.count}"
        )
        return envelope

    def create_envelope(
        self,
        sender: str,
        kind: EnvelopeKind,
        total_amount,
        count: int,
        note: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Envelope:
        """
        Create and store a currency envelope.

        Does not touch the sender's balance; use create_envelope_with_validation
        for the debit-then-create flow.
        """
        kind = EnvelopeKind(kind)
        if kind is EnvelopeKind.ITEM:
            raise InvalidRequest("物品红包请使用 create_item_envelope")
        amount, note = self._validate(kind, total_amount, count, note)
        return self._persist(
            self._new_envelope(sender, kind, amount, count, note, channel_id)
        )

    def create_envelope_with_validation(
        self,
        sender: str,
        kind: EnvelopeKind,
        total_amount,
        count: int,
        note: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Envelope:
        """
        Check the balance, debit the sender, then create the envelope.

        Nothing is created when the debit fails. If creation fails after the
        debit, the amount is credited back and the store error propagates.

        Raises:
            InvalidRequest: bad amount, count or note
            InsufficientBalance: the sender cannot afford the envelope
            LedgerUnavailable: the debit did not go through
            InternalStoreError: the envelope could not be stored
        """
        kind = EnvelopeKind(kind)
        if kind is EnvelopeKind.ITEM:
            raise InvalidRequest("物品红包请使用 create_item_envelope")
        amount, note = self._validate(kind, total_amount, count, note)

        if not self.ledger.has_sufficient_balance(sender, amount):
            raise InsufficientBalance(sender, amount)

        envelope = self._new_envelope(sender, kind, amount, count, note, channel_id)
        if not self._call_ledger(
            self.ledger.debit, sender, amount, f"red_envelope_create_{envelope.id}"
        ):
            raise LedgerUnavailable(f"扣除 {sender} 的 {amount} 失败")

        try:
            return self._persist(envelope)
        except Exception:
            logger.critical(
                f"扣款后创建红包失败: id={envelope.id} sender={sender} amount={amount}"
            )
            if not self._call_ledger(
                self.ledger.credit,
                sender,
                amount,
                f"red_envelope_create_refund_{envelope.id}",
            ):
                logger.critical(
                    f"创建失败后的退款也失败，需要人工对账: sender={sender} amount={amount}"
                )
            raise

    def create_item_envelope(
        self,
        owner: str,
        count: int,
        note: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Envelope:
        """
        Create an item envelope over ``owner``'s stored items.

        The items are locked to the new envelope before it is stored, so two
        item envelopes can never draw from the same snapshot.

        Raises:
            InvalidRequest: bad count or note
            Empty: the owner has no stored items
            ItemsLocked: the items already back an open envelope
        """
        _, note = self._validate(EnvelopeKind.ITEM, ZERO, count, note)

        snapshot = self.item_storage.get_snapshot(owner)
        if snapshot is None or not snapshot.occupied_slots:
            raise Empty(f"{owner} has no stored items")
        if snapshot.is_locked(self._clock()):
            raise ItemsLocked(owner, snapshot.envelope_id)

        envelope = self._new_envelope(
            owner, EnvelopeKind.ITEM, ZERO, count, note, channel_id
        )
        if not self.item_storage.associate(
            owner, envelope.id, envelope.expires_at, expected_version=snapshot.version
        ):
            raise ItemsLocked(owner)

        try:
            self._persist(envelope)
        except Exception:
            self.item_storage.clear_association(owner, envelope.id)
            raise

        self.previews.save(
            envelope.id, [item for item in snapshot.items if item is not None]
        )
        return envelope

    # Claiming

    def claim(self, envelope_id: str, claimant: str) -> ClaimResult:
        """
        Claim one share of an envelope.

        Raises:
            NotFound: no such envelope
            Invalid: closed or expired
            AlreadyClaimed: this claimant already has a record
            Empty: item envelope with nothing left to draw
            LedgerUnavailable: the claim is recorded but the credit failed; it
                will be settled by the reconciliation job, do not retry
            InternalStoreError: outcome unknown, check has_claimed before retrying
        """
        now = self._clock()
        envelope = self.cache.get_or_load(envelope_id, self.store.load_envelope)
        if envelope is None:
            logger.debug(f"红包不存在: {envelope_id}")
            raise NotFound(envelope_id)

        if not envelope.is_valid(now):
            logger.debug(f"红包无效: {envelope_id}")
            raise Invalid(envelope_id, "closed" if envelope.closed else "expired")

        # Fast path only, the unique constraint decides
        if self.store.has_claimed(envelope_id, claimant):
            logger.debug(f"用户已领过红包: {claimant} {envelope_id}")
            raise AlreadyClaimed(envelope_id, claimant)

        draw_item = None
        if envelope.kind is EnvelopeKind.ITEM:

            def draw_item(session, row: RedEnvelope) -> ItemStack:
                return self.item_storage.draw_item(session, row.sender, self._rng)

        def amount_for(row: RedEnvelope) -> Decimal:
            return compute_amount(
                EnvelopeKind(row.kind),
                row.total_amount,
                row.count,
                row.claimed_amount,
                row.claimed_count,
                self._rng,
            )

        try:
            record, item = self.store.insert_claim(
                envelope_id, claimant, now, amount_for, draw_item
            )
        except NotFound:
            self.cache.remove(envelope_id)
            raise
        except Invalid:
            self._refresh(envelope_id)
            raise

        if item is not None:
            logger.info(
                f"红包领取成功: id={envelope_id} user={claimant} item={item.display_name}"
            )
        else:
            logger.info(
                f"红包领取成功: id={envelope_id} user={claimant} amount={record.amount}"
            )

        credited = True
        if envelope.kind.is_currency:
            credited = self._credit(record)
            if credited:
                record = record.model_copy(update={"credit_pending": False})

        completion = self._complete_if_done(envelope, now)
        current = self.cache.get(envelope_id) or envelope

        if not credited:
            raise LedgerUnavailable(
                f"领取已记录但入账失败: record={record.id}",
                record=record,
                completion=completion,
            )
        return ClaimResult(
            envelope=current,
            record=record,
            amount=record.amount,
            item=item,
            completion=completion,
        )

    def _refresh(self, envelope_id: str) -> None:
        envelope = self.store.load_envelope(envelope_id)
        if envelope is None:
            self.cache.remove(envelope_id)
        else:
            self.cache.put(envelope)

    def _call_ledger(self, operation, actor: str, amount: Decimal, reference: str) -> bool:
        try:
            return bool(operation(actor, amount, reference))
        except Exception:
            logger.exception(f"余额服务调用失败: user={actor} amount={amount} ref={reference}")
            return False

    def _credit(self, record: Record) -> bool:
        if not self._call_ledger(
            self.ledger.credit, record.claimant, record.amount, claim_reference(record.id)
        ):
            logger.critical(
                f"发放红包金额失败，等待对账: record={record.id} "
                f"user={record.claimant} amount={record.amount}"
            )
            return False
        try:
            self.store.mark_credited(record.id)
        except Exception as e:
            # The ledger ignores a repeated reference, the sweep may redo it
            logger.warning(f"入账状态未能更新: record={record.id} reason={e}")
        return True

    def _complete_if_done(
        self, envelope: Envelope, now: int
    ) -> Optional[EnvelopeCompletionInfo]:
        claimed = self.store.count_claims(envelope.id)
        if claimed < envelope.count:
            return None

        if not self.store.close_envelope(envelope.id):
            # Someone else closed it and announces it
            self.cache.mark_closed(envelope.id)
            return None

        if self.cache.mark_closed(envelope.id) is None:
            self.cache.put(envelope.model_copy(update={"closed": True}))

        if envelope.kind is EnvelopeKind.ITEM:
            self.previews.remove(envelope.id)
            self.item_storage.clear_association(envelope.sender, envelope.id)
        else:
            # Rounding leftovers of a fully claimed envelope
            self._return_remainder(envelope)

        lucky =self.store.get_lucky_claimant(envelope.id)
        info = EnvelopeCompletionInfo(
            envelope_id=envelope.id,
            creator_id=envelope.sender,
            kind=envelope.kind,
            duration_seconds=max(0, (now - envelope.created_at) // 1000),
            lucky_king_id=lucky[0] if lucky else None,
            lucky_king_amount=lucky[1] if lucky else ZERO,
        )
        logger.info(
            f"红包已领完: id={envelope.id} count={claimed} lucky={info.lucky_king_id}"
        )
        return info

    # Administration

    def delete_envelope(self, envelope_id: str) -> None:
        """Purge an envelope from store, cache and previews; records stay"""
        if not self.store.delete_envelope(envelope_id):
            self.cache.remove(envelope_id)
            raise NotFound(envelope_id)
        self.cache.remove(envelope_id)
        self.previews.remove(envelope_id)
        logger.info(f"删除红包: {envelope_id}")

    # Queries

    def get_envelope(self, envelope_id: str) -> Optional[Envelope]:
        return self.cache.get_or_load(envelope_id, self.store.load_envelope)

    def resolve(self, token: str) -> Envelope:
        """Find an envelope by full id or by a unique id prefix"""
        token = token.strip().lower()
        envelope = self.get_envelope(token)
        if envelope is not None:
            return envelope
        matches = self.store.find_by_prefix(token)
        if not matches:
            raise NotFound(token)
        if len(matches) > 1:
            raise InvalidRequest(f"红包 ID {token} 不唯一")
        return self.cache.get_or_load(matches[0].id, lambda _: matches[0])

    def list_active(self, channel_id: Optional[str] = None) -> List[Envelope]:
        return self.store.list_active(self._clock(), channel_id)

    def get_records(self, envelope_id: str) -> List[Record]:
        return self.store.get_records(envelope_id)

    def get_claimed_count(self, envelope_id: str) -> int:
        return self.store.count_claims(envelope_id)

    def has_claimed(self, envelope_id: str, claimant: str) -> bool:
        return self.store.has_claimed(envelope_id, claimant)

    def get_lucky_claimant(self, envelope_id: str) -> Optional[Tuple[str, Decimal]]:
        return self.store.get_lucky_claimant(envelope_id)

    def get_preview(self, envelope_id: str) -> Optional[List[ItemStack]]:
        return self.previews.get(envelope_id)

    # Reconciliation

    def settle_pending_credits(self) -> int:
        """Re-apply credits whose claims were recorded but never confirmed"""
        cutoff = self._clock() - self.config.red_envelope_settle_delay_seconds * 1000
        settled = 0
        for record in self.store.get_pending_credits(cutoff):
            if self._credit(record):
                settled += 1
                logger.info(f"补发红包金额: record={record.id} user={record.claimant}")
        return settled

    def refund_expired_envelopes(self) -> int:
        """Return the unclaimed remainder of expired envelopes to their senders"""
        now = self._clock()
        count = 0
        for envelope in self.store.list_refundable(now):
            if envelope.kind.is_currency:
                remainder = self._return_remainder(envelope)
            else:
                remainder = self.store.mark_refunded(envelope.id)
                if remainder is not None:
                    self.previews.remove(envelope.id)
                    self.item_storage.clear_association(envelope.sender, envelope.id)
            if remainder is None:
                continue

            count += 1
            logger.info(f"红包过期处理完成: id={envelope.id} refund={remainder}")

        evicted = self.cache.evict(lambda envelope: not envelope.is_valid(now))
        if evicted:
            logger.debug(f"清理红包缓存: {evicted} 个")
        return count

    def _return_remainder(self, envelope: Envelope) -> Optional[Decimal]:
        """Credit the unreserved part back to the sender, at most once per envelope"""
        remainder = self.store.mark_refunded(envelope.id)
        if remainder is None or remainder <= 0:
            return remainder

        if not self._call_ledger(
            self.ledger.credit,
            envelope.sender,
            remainder,
            f"red_envelope_refund_{envelope.id}",
        ):
            logger.critical(
                f"红包退款失败，需要人工对账: id={envelope.id} "
                f"sender={envelope.sender} amount={remainder}"
            )
        return remainder

    def cleanup_previews(self) -> int:
        now = self._clock()

        def is_valid(envelope_id: str) -> bool:
            # Evicted entries are looked up without re-caching them
            envelope = self.cache.get(envelope_id) or self.store.load_envelope(envelope_id)
            return envelope is not None and envelope.is_valid(now)

        return self.previews.cleanup(is_valid)
