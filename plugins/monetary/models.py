"""
Database models and data structures for the monetary plugin.
"""

from decimal import Decimal
from enum import StrEnum
from typing import Optional

from sqlalchemy import Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, declarative_base, mapped_column


# Database table base class
Base = declarative_base()

CENT = Decimal("0.01")


class TransactionCategory(StrEnum):
    """Transaction categories for monetary operations"""

    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class User(Base):
    """User table model"""

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2, asdecimal=True), default=Decimal("0.00")
    )


class Transaction(Base):
    """Transaction table model"""

    __tablename__ = "transactions"
    __table_args__ = (
        # NULL references never collide, only idempotent writes set one
        UniqueConstraint("user_id", "reference", name="uq_user_reference"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    category: Mapped[str] = mapped_column(String)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2, asdecimal=True))
    time: Mapped[int] = mapped_column(Integer)  # Unix timestamp
    description: Mapped[str] = mapped_column(String, index=True)
    reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
