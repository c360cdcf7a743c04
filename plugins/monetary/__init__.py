from nonebot import get_driver

from .database import init_database
from .transaction_service import get_user_transactions
from .user_service import (
    get_user,
    has_enough,
    get_balance as get,
    add_balance as add,
    add_balance_once as add_once,
    cost_balance as cost,
    transfer_balance as transfer,
)


@get_driver().on_startup
async def init():
    init_database()


__all__ = [
    "get",
    "add",
    "add_once",
    "cost",
    "transfer",
    "has_enough",
    "get_user",
    "get_user_transactions",
    "init_database",
]
