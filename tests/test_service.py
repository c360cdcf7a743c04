import threading
from decimal import Decimal

import pytest

from plugins.red_envelope.exceptions import (
    AlreadyClaimed,
    InsufficientBalance,
    InternalStoreError,
    Invalid,
    InvalidRequest,
    LedgerUnavailable,
    NotFound,
)
from plugins.red_envelope.models import EnvelopeKind


def run_concurrently(target, args_list):
    barrier = threading.Barrier(len(args_list))
    results, errors = [], []
    lock = threading.Lock()

    def worker(*args):
        barrier.wait()
        try:
            result = target(*args)
            with lock:
                results.append(result)
        except Exception as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors


class TestCreate:
    """Envelope creation and validation."""

    def test_create_average(self, service, clock):
        envelope = service.create_envelope(
            "alice", EnvelopeKind.AVERAGE, "100", 4, "新年快乐", "c1"
        )
        assert envelope.total_amount == Decimal("100.00")
        assert envelope.count == 4
        assert envelope.note == "新年快乐"
        assert envelope.created_at == clock.now
        assert envelope.expires_at == clock.now + 86400 * 1000
        assert not envelope.closed
        assert service.get_envelope(envelope.id) == envelope

    def test_expiry_disabled(self, service, config):
        config.red_envelope_expire_seconds = 0
        envelope = service.create_envelope("alice", EnvelopeKind.RANDOM, "1", 1)
        assert envelope.expires_at == 0

    @pytest.mark.parametrize(
        "amount, count",
        [
            ("abc", 1),
            ("0", 1),
            ("-5", 2),
            ("1.234", 1),
            ("NaN", 1),
            ("Infinity", 1),
            ("0.05", 10),
            ("10", 0),
            ("10", 101),
            ("2000000", 1),
        ],
    )
    def test_rejects_bad_input(self, service, amount, count):
        with pytest.raises(InvalidRequest):
            service.create_envelope("alice", EnvelopeKind.RANDOM, amount, count)
        assert service.list_active() == []

    def test_rejects_long_note(self, service):
        with pytest.raises(InvalidRequest):
            service.create_envelope("alice", EnvelopeKind.AVERAGE, "10", 1, "字" * 51)

    def test_item_kind_needs_item_api(self, service):
        with pytest.raises(InvalidRequest):
            service.create_envelope("alice", EnvelopeKind.ITEM, "10", 1)


class TestCreateWithValidation:
    """Debit-then-create flow."""

    def test_debits_sender(self, service, ledger):
        ledger.balances["alice"] = Decimal("100")
        envelope = service.create_envelope_with_validation(
            "alice", EnvelopeKind.RANDOM, "30", 3
        )
        assert ledger.balance("alice") == Decimal("70")
        assert f"red_envelope_create_{envelope.id}" in ledger.references

    def test_insufficient_balance(self, service, ledger):
        ledger.balances["alice"] = Decimal("5")
        with pytest.raises(InsufficientBalance):
            service.create_envelope_with_validation(
                "alice", EnvelopeKind.RANDOM, "30", 3
            )
        assert service.list_active() == []
        assert ledger.balance("alice") == Decimal("5")

    def test_debit_failure_creates_nothing(self, service, ledger):
        ledger.balances["alice"] = Decimal("100")
        ledger.fail_debit = True
        with pytest.raises(LedgerUnavailable):
            service.create_envelope_with_validation(
                "alice", EnvelopeKind.AVERAGE, "30", 3
            )
        assert service.list_active() == []

    def test_store_failure_refunds(self, service, ledger, monkeypatch):
        ledger.balances["alice"] = Decimal("100")

        def broken_save(envelope):
            raise InternalStoreError("disk full")

        monkeypatch.setattr(service.store, "save_envelope", broken_save)
        with pytest.raises(InternalStoreError):
            service.create_envelope_with_validation(
                "alice", EnvelopeKind.AVERAGE, "30", 3
            )
        assert ledger.balance("alice") == Decimal("100")
        assert len(service.cache) == 0


class TestClaim:
    """Claiming shares."""

    def test_average_claim(self, service, ledger):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "100", 4)
        result = service.claim(envelope.id, "bob")
        assert result.amount == Decimal("25.00")
        assert result.record.claimant == "bob"
        assert not result.record.credit_pending
        assert result.completion is None
        assert ledger.balance("bob") == Decimal("25.00")
        assert service.get_records(envelope.id)[0].credit_pending is False

    def test_single_random_share_gets_total(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.RANDOM, "8.88", 1)
        result = service.claim(envelope.id, "bob")
        assert result.amount == Decimal("8.88")
        assert result.completion is not None

    def test_random_sum_within_total(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.RANDOM, "10", 10)
        amounts = [
            service.claim(envelope.id, f"user{i}").amount for i in range(10)
        ]
        assert all(amount >= Decimal("0.01") for amount in amounts)
        assert sum(amounts) <= Decimal("10.00")

    def test_missing_envelope(self, service):
        with pytest.raises(NotFound):
            service.claim("no-such-envelope", "bob")

    def test_claim_twice(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "10", 5)
        service.claim(envelope.id, "bob")
        with pytest.raises(AlreadyClaimed):
            service.claim(envelope.id, "bob")
        assert service.get_claimed_count(envelope.id) == 1

    def test_closes_after_count_claims(self, service, clock):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "100", 2)
        service.claim(envelope.id, "bob")
        clock.advance(90)
        result = service.claim(envelope.id, "carol")

        completion = result.completion
        assert completion is not None
        assert completion.envelope_id == envelope.id
        assert completion.creator_id == "alice"
        assert completion.duration_seconds == 90
        # Equal shares, the earlier claim wins
        assert completion.lucky_king_id == "bob"
        assert completion.lucky_king_amount == Decimal("50.00")
        assert result.envelope.closed

        with pytest.raises(Invalid) as exc_info:
            service.claim(envelope.id, "dave")
        assert exc_info.value.reason == "closed"
        assert service.list_active() == []

    def test_expired_envelope(self, service, clock):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "10", 5)
        clock.advance(86400)
        with pytest.raises(Invalid) as exc_info:
            service.claim(envelope.id, "bob")
        assert exc_info.value.reason == "expired"
        assert service.get_claimed_count(envelope.id) == 0

    def test_claim_after_cache_eviction(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "9", 3)
        service.cache.clear()
        assert service.get_envelope(envelope.id) == envelope
        assert service.claim(envelope.id, "bob").amount == Decimal("3.00")

    def test_closed_state_seen_by_other_cache(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "2", 1)
        service.cache.put(envelope)
        service.store.close_envelope(envelope.id)
        # The stale cached copy still passes the fast check, the store refuses
        with pytest.raises(Invalid):
            service.claim(envelope.id, "bob")
        assert service.cache.get(envelope.id).closed

    def test_credit_failure_keeps_record(self, service, ledger):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "10", 2)
        ledger.fail_credit = True
        with pytest.raises(LedgerUnavailable) as exc_info:
            service.claim(envelope.id, "bob")

        record = exc_info.value.record
        assert record.claimant == "bob"
        assert record.amount == Decimal("5.00")
        assert service.has_claimed(envelope.id, "bob")
        assert service.get_records(envelope.id)[0].credit_pending
        with pytest.raises(AlreadyClaimed):
            service.claim(envelope.id, "bob")


class TestConcurrentClaims:
    """Many threads claiming at once."""

    def test_same_claimant_succeeds_once(self, service, ledger):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "100", 10)
        results, errors = run_concurrently(
            service.claim, [(envelope.id, "bob")] * 8
        )
        assert len(results) == 1
        assert len(errors) == 7
        assert all(isinstance(e, AlreadyClaimed) for e in errors)
        assert service.get_claimed_count(envelope.id) == 1
        assert ledger.balance("bob") == Decimal("10.00")

    def test_claims_bounded_by_count(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.RANDOM, "50", 5)
        results, errors = run_concurrently(
            service.claim, [(envelope.id, f"user{i}") for i in range(10)]
        )
        assert len(results) == 5
        assert len(errors) == 5
        assert all(isinstance(e, Invalid) for e in errors)
        assert service.get_claimed_count(envelope.id) == 5
        assert sum(result.amount for result in results) <= Decimal("50.00")

        completions = [result.completion for result in results if result.completion]
        assert len(completions) == 1
        assert service.get_envelope(envelope.id).closed


class TestQueries:
    def test_list_active_by_channel(self, service, clock):
        first = service.create_envelope("alice", EnvelopeKind.AVERAGE, "1", 1, None, "c1")
        clock.advance(1)
        second = service.create_envelope("bob", EnvelopeKind.AVERAGE, "1", 1, None, "c1")
        service.create_envelope("carol", EnvelopeKind.AVERAGE, "1", 1, None, "c2")

        assert [e.id for e in service.list_active("c1")] == [second.id, first.id]
        assert len(service.list_active()) == 3

    def test_resolve_by_prefix(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "1", 1)
        service.cache.clear()
        assert service.resolve(envelope.id[:8]) == envelope
        assert service.resolve(envelope.id.upper()) == envelope

    def test_resolve_unknown(self, service):
        with pytest.raises(NotFound):
            service.resolve("ffffffff")
        with pytest.raises(NotFound):
            service.resolve("不是ID")

    def test_resolve_ambiguous(self, service, clock):
        for suffix in ("1", "2"):
            envelope = service._new_envelope(
                "alice",
                EnvelopeKind.AVERAGE,
                Decimal("1.00"),
                1,
                None,
                None,
                envelope_id=f"abcd000{suffix}-0000-0000-0000-000000000000",
            )
            service.store.save_envelope(envelope)
        with pytest.raises(InvalidRequest):
            service.resolve("abcd")

    def test_records_newest_first(self, service, clock):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "3", 3)
        service.claim(envelope.id, "bob")
        clock.advance(1)
        service.claim(envelope.id, "carol")
        assert [r.claimant for r in service.get_records(envelope.id)] == ["carol", "bob"]


class TestDelete:
    def test_delete_keeps_records(self, service):
        envelope = service.create_envelope("alice", EnvelopeKind.AVERAGE, "10", 2)
        service.claim(envelope.id, "bob")

        service.delete_envelope(envelope.id)

        assert service.get_envelope(envelope.id) is None
        assert envelope.id not in service.cache
        assert service.has_claimed(envelope.id, "bob")
        with pytest.raises(NotFound):
            service.claim(envelope.id, "carol")
        with pytest.raises(NotFound):
            service.delete_envelope(envelope.id)
