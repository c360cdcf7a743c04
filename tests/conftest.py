import random
import tempfile
import threading
from decimal import Decimal

import nonebot
import pytest

# Plugins read the driver config at import time
nonebot.init(driver="~none", localstore_data_dir=tempfile.mkdtemp())
nonebot.load_plugin("plugins.monetary")
nonebot.load_plugin("plugins.red_envelope")

from plugins.red_envelope.config import Config  # noqa: E402
from plugins.red_envelope.database import init_database  # noqa: E402
from plugins.red_envelope.item_storage import ItemStorage  # noqa: E402
from plugins.red_envelope.service import RedEnvelopeService  # noqa: E402
from plugins.red_envelope.store import EnvelopeStore  # noqa: E402


START = 1_700_000_000_000


class FakeLedger:
    """In-memory balances; a repeated reference is applied only once"""

    def __init__(self):
        self.balances = {}
        self.references = set()
        self.fail_debit = False
        self.fail_credit = False
        self._lock = threading.Lock()

    def balance(self, actor):
        with self._lock:
            return self.balances.get(actor, Decimal("0"))

    def has_sufficient_balance(self, actor, amount):
        return self.balance(actor) >= amount

    def debit(self, actor, amount, reference):
        if self.fail_debit:
            return False
        with self._lock:
            if reference in self.references:
                return True
            if self.balances.get(actor, Decimal("0")) < amount:
                return False
            self.balances[actor] = self.balances.get(actor, Decimal("0")) - amount
            self.references.add(reference)
            return True

    def credit(self, actor, amount, reference):
        if self.fail_credit:
            raise ConnectionError("ledger is down")
        with self._lock:
            if reference in self.references:
                return True
            self.balances[actor] = self.balances.get(actor, Decimal("0")) + amount
            self.references.add(reference)
            return True


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1000)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def session_factory(tmp_path):
    return init_database(f"sqlite:///{tmp_path / 'red_envelope.db'}")


@pytest.fixture
def store(session_factory):
    return EnvelopeStore(session_factory)


@pytest.fixture
def item_storage(session_factory):
    return ItemStorage(session_factory)


@pytest.fixture
def service(store, item_storage, ledger, config, clock):
    return RedEnvelopeService(
        store, item_storage, ledger, config, rng=random.Random(42), clock=clock
    )
