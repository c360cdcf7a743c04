from decimal import Decimal
from typing import Optional

from nonebot.log import logger
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from .database import get_session
from .models import CENT, TransactionCategory, User
from .transaction_service import has_transaction, record_transaction


def _to_amount(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT)


def get_user(user_id: str) -> User:
    """Get or create a user record"""
    session = get_session()

    user = session.query(User).filter(User.user_id == user_id).first()
    if not user:
        try:
            session.add(User(user_id=user_id, balance=Decimal("0.00")))
            session.commit()
        except IntegrityError:
            # Created by another thread in the meantime
            session.rollback()
        user = session.query(User).filter(User.user_id == user_id).one()
    return user


# Balance operations
def get_balance(user_id: str) -> Decimal:
    """Get user's current balance"""
    return get_user(user_id).balance


def has_enough(user_id: str, amount) -> bool:
    """Check whether the user can afford ``amount``"""
    return get_balance(user_id) >= _to_amount(amount)


def _change_balance(user_id: str, delta: Decimal, guard: Optional[Decimal] = None):
    """
    Move the balance inside the database, never through a Python read-modify-write.

    Rounded to cents on write so that the stored value compares exactly with
    later amounts even on backends that keep it as a float.
    """
    stmt = update(User).where(User.user_id == user_id)
    if guard is not None:
        stmt = stmt.where(User.balance >= guard)
    return get_session().execute(
        stmt.values(balance=func.round(User.balance + delta, 2)).execution_options(
            synchronize_session=False
        )
    )


def add_balance(
    user_id: str, amount, description: str, reference: Optional[str] = None
) -> bool:
    """Add balance to user account

    With ``reference`` the credit is applied at most once: the transaction log
    refuses a second row with the same reference, which rolls the change back.

    Returns:
        bool: False when ``reference`` had already been applied
    """
    session = get_session()
    amount = _to_amount(amount)
    get_user(user_id)

    try:
        _change_balance(user_id, amount)
        record_transaction(
            user_id, TransactionCategory.INCOME, amount, description, reference
        )
        session.commit()
    except IntegrityError:
        session.rollback()
        if reference is None:
            raise
        logger.warning(f"重复入账已忽略: user={user_id} reference={reference}")
        return False
    except Exception:
        session.rollback()
        raise
    return True


def add_balance_once(user_id: str, amount, description: str) -> bool:
    """Add balance unless ``description`` was already applied for this user

    Returns:
        bool: False when the description had already been applied
    """
    if has_transaction(user_id, description):
        logger.warning(f"重复入账已忽略: user={user_id} reference={description}")
        return False
    return add_balance(user_id, amount, description, reference=description)


def cost_balance(user_id: str, amount, description: str):
    """Deduct balance from user account"""
    session = get_session()
    amount = _to_amount(amount)
    get_user(user_id)

    try:
        result = _change_balance(user_id, -amount, guard=amount)
        if result.rowcount != 1:
            raise ValueError(f"Insufficient balance for {user_id}: need {amount}")
        record_transaction(user_id, TransactionCategory.EXPENSE, amount, description)
        session.commit()
    except Exception:
        session.rollback()
        raise


def transfer_balance(from_user_id: str, to_user_id: str, amount, description: str):
    """Transfer balance between users"""
    cost_balance(from_user_id, amount, f"transfer_to_{to_user_id}_{description}")
    add_balance(to_user_id, amount, f"transfer_from_{from_user_id}_{description}")
