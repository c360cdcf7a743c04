from decimal import Decimal
from typing import Protocol

from nonebot.log import logger

from .. import monetary


class LedgerAdapter(Protocol):
    """Balance operations the red envelope service relies on

    Every call is synchronous and may fail on its own; a False return or an
    exception both count as failure.
    """

    def has_sufficient_balance(self, actor: str, amount: Decimal) -> bool: ...

    def debit(self, actor: str, amount: Decimal, reference: str) -> bool: ...

    def credit(self, actor: str, amount: Decimal, reference: str) -> bool: ...


class MonetaryLedger:
    """LedgerAdapter backed by the monetary plugin

    ``credit`` is idempotent per reference: the monetary transaction log is
    checked first, so the reconciliation job can safely repeat a credit.
    """

    def has_sufficient_balance(self, actor: str, amount: Decimal) -> bool:
        return monetary.has_enough(actor, amount)

    def debit(self, actor: str, amount: Decimal, reference: str) -> bool:
        try:
            monetary.cost(actor, amount, reference)
            return True
        except Exception as e:
            logger.error(f"扣除余额失败: user={actor} amount={amount} reason={e}")
            return False

    def credit(self, actor: str, amount: Decimal, reference: str) -> bool:
        try:
            monetary.add_once(actor, amount, reference)
            return True
        except Exception as e:
            logger.error(f"发放余额失败: user={actor} amount={amount} reason={e}")
            return False
