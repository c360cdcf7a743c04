import time
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import (
    BigInteger,
    Boolean,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column


Base = declarative_base()

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def now_ms() -> int:
    return int(time.time() * 1000)


class EnvelopeKind(StrEnum):
    """红包类型"""

    RANDOM = "RANDOM"  # 随机红包
    AVERAGE = "AVERAGE"  # 平分红包
    ITEM = "ITEM"  # 物品红包

    @property
    def is_currency(self) -> bool:
        return self is not EnvelopeKind.ITEM


class RedEnvelope(Base):
    __tablename__ = "red_envelopes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    sender: Mapped[str] = mapped_column(String, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2, asdecimal=True), nullable=False
    )
    count: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    channel_id: Mapped[Optional[str]] = mapped_column(
        String, nullable=True, index=True
    )
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )  # 0 = never
    closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Reservation counters, only ever moved by compare-and-set updates
    claimed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2, asdecimal=True), nullable=False, default=ZERO
    )
    refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ClaimRecord(Base):
    __tablename__ = "claim_records"
    __table_args__ = (
        UniqueConstraint("envelope_id", "claimant", name="uq_envelope_claimant"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # No foreign key: records outlive a deleted envelope
    envelope_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    claimant: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2, asdecimal=True), nullable=False
    )
    claimed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    credit_pending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )


class ItemSnapshot(Base):
    __tablename__ = "item_snapshots"

    owner: Mapped[str] = mapped_column(String, primary_key=True)
    items: Mapped[str] = mapped_column(Text, nullable=False)  # JSON slot array
    envelope_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Envelope(BaseModel):
    """Immutable view of a red envelope, the value held by the cache"""

    model_config = ConfigDict(frozen=True)

    id: str
    sender: str
    kind: EnvelopeKind
    total_amount: Decimal
    count: int = Field(ge=1)
    note: Optional[str] = None
    channel_id: Optional[str] = None
    created_at: int
    expires_at: int = 0
    closed: bool = False

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.expires_at <= 0:
            return False
        return (now_ms() if now is None else now) >= self.expires_at

    def is_valid(self, now: Optional[int] = None) -> bool:
        return not self.closed and not self.is_expired(now)

    @classmethod
    def from_row(cls, row: RedEnvelope) -> "Envelope":
        return cls(
            id=row.id,
            sender=row.sender,
            kind=EnvelopeKind(row.kind),
            total_amount=Decimal(row.total_amount).quantize(CENT),
            count=row.count,
            note=row.note,
            channel_id=row.channel_id,
            created_at=row.created_at,
            expires_at=row.expires_at,
            closed=row.closed,
        )


class Record(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    envelope_id: str
    claimant: str
    amount: Decimal
    claimed_at: int
    credit_pending: bool = False

    @classmethod
    def from_row(cls, row: ClaimRecord) -> "Record":
        return cls(
            id=row.id,
            envelope_id=row.envelope_id,
            claimant=row.claimant,
            amount=Decimal(row.amount).quantize(CENT),
            claimed_at=row.claimed_at,
            credit_pending=row.credit_pending,
        )


class ItemStack(BaseModel):
    """One occupied slot: a stack of identical items"""

    model_config = ConfigDict(frozen=True)

    item_id: str
    name: Optional[str] = None
    amount: int = Field(default=1, ge=1)
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.item_id


_slots_adapter = TypeAdapter(List[Optional[ItemStack]])


def dump_slots(items: List[Optional[ItemStack]]) -> str:
    return _slots_adapter.dump_json(items).decode()


def load_slots(data: str) -> List[Optional[ItemStack]]:
    return _slots_adapter.validate_json(data)


class Snapshot(BaseModel):
    owner: str
    items: List[Optional[ItemStack]]
    envelope_id: Optional[str] = None
    expires_at: int = 0
    updated_at: int
    version: int = 0

    def is_locked(self, now: Optional[int] = None) -> bool:
        """物品是否被锁定（已发送红包且未过期）"""
        if self.envelope_id is None:
            return False
        if self.expires_at <= 0:
            return True
        return (now_ms() if now is None else now) < self.expires_at

    @property
    def occupied_slots(self) -> List[int]:
        return [i for i, item in enumerate(self.items) if item is not None]

    @classmethod
    def from_row(cls, row: ItemSnapshot) -> "Snapshot":
        return cls(
            owner=row.owner,
            items=load_slots(row.items),
            envelope_id=row.envelope_id,
            expires_at=row.expires_at,
            updated_at=row.updated_at,
            version=row.version,
        )


@dataclass
class EnvelopeCompletionInfo:
    """Emitted once, by the claim that closed the envelope"""

    envelope_id: str
    creator_id: str
    kind: EnvelopeKind
    duration_seconds: int
    lucky_king_id: Optional[str]
    lucky_king_amount: Decimal


@dataclass
class ClaimResult:
    envelope: Envelope
    record: Record
    amount: Decimal
    item: Optional[ItemStack] = None
    completion: Optional[EnvelopeCompletionInfo] = None
