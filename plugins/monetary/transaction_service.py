import time
from decimal import Decimal
from typing import List, Optional

from .database import get_session
from .models import Transaction, TransactionCategory


def record_transaction(
    user_id: str,
    category: TransactionCategory,
    amount: Decimal,
    description: str,
    reference: Optional[str] = None,
) -> Transaction:
    """Add a transaction record to the current session (caller commits)"""
    transaction = Transaction(
        user_id=user_id,
        category=category,
        amount=amount,
        description=description,
        reference=reference,
        time=int(time.time()),
    )
    get_session().add(transaction)
    return transaction


def has_transaction(user_id: str, reference: str) -> bool:
    """Check whether a transaction with this reference was already logged"""
    session = get_session()
    return (
        session.query(Transaction.id)
        .filter(Transaction.user_id == user_id)
        .filter(Transaction.reference == reference)
        .first()
        is not None
    )


def get_user_transactions(
    user_id: str, description: Optional[str] = None, limit: Optional[int] = None
) -> List[Transaction]:
    """
    Get user transactions with optional filtering

    Args:
        user_id: User ID to get transactions for
        description: Optional description filter
        limit: Optional limit on number of results

    Returns:
        List of Transaction objects ordered by time (newest first)
    """
    session = get_session()
    query = session.query(Transaction).filter(Transaction.user_id == user_id)

    if description:
        query = query.filter(Transaction.description == description)

    query = query.order_by(Transaction.time.desc(), Transaction.id.desc())

    if limit:
        query = query.limit(limit)

    return query.all()
