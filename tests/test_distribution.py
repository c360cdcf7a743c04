import random
from decimal import Decimal

import pytest

from plugins.red_envelope.distribution import (
    average_amount,
    compute_amount,
    pick_slot,
    random_amount,
    take_one,
)
from plugins.red_envelope.models import CENT, ZERO, EnvelopeKind, ItemStack


class TestAverage:
    """Even split."""

    def test_exact_split(self):
        assert average_amount(Decimal("100"), 4) == Decimal("25.00")

    def test_rounds_down_to_cent(self):
        assert average_amount(Decimal("10"), 3) == Decimal("3.33")

    def test_shares_never_exceed_total(self):
        for total, count in [("1.00", 7), ("99.99", 13), ("0.05", 5)]:
            share = average_amount(Decimal(total), count)
            assert share * count <= Decimal(total)


class TestRandom:
    """Random share draws."""

    def test_single_share_gets_everything(self):
        assert random_amount(Decimal("12.34"), 1, rng=random.Random(1)) == Decimal(
            "12.34"
        )

    def test_draw_stays_within_bounds(self):
        rng = random.Random(7)
        for _ in range(200):
            amount = random_amount(Decimal("100"), 10, rng=rng)
            assert CENT <= amount <= Decimal("30.00")
            assert amount == amount.quantize(CENT)

    @pytest.mark.parametrize("seed", range(20))
    def test_sum_never_exceeds_total(self, seed):
        rng = random.Random(seed)
        total = Decimal("10.00")
        count = 8
        claimed = ZERO
        for claimed_count in range(count):
            amount = random_amount(total, count, claimed, claimed_count, rng)
            assert amount >= CENT
            claimed += amount
        assert claimed <= total

    def test_last_claimants_keep_a_cent_each(self):
        # Almost everything already handed out, two claimants left
        amount = random_amount(
            Decimal("1.00"), 3, Decimal("0.98"), 1, rng=random.Random(3)
        )
        assert amount == CENT


class TestComputeAmount:
    def test_dispatches_on_kind(self):
        rng = random.Random(0)
        assert compute_amount(EnvelopeKind.AVERAGE, Decimal("9"), 3) == Decimal("3.00")
        assert compute_amount(EnvelopeKind.RANDOM, Decimal("5"), 1, rng=rng) == Decimal(
            "5.00"
        )
        assert compute_amount(EnvelopeKind.ITEM, ZERO, 3) == Decimal("1")


class TestItemDraw:
    """Slot picking and stack splitting."""

    def test_pick_only_occupied_slots(self):
        items = [None, ItemStack(item_id="apple"), None, ItemStack(item_id="pear")]
        rng = random.Random(5)
        picked = {pick_slot(items, rng) for _ in range(50)}
        assert picked == {1, 3}

    def test_pick_from_empty_returns_none(self):
        assert pick_slot([None] * 54) is None

    def test_take_one_from_stack(self):
        items = [ItemStack(item_id="apple", name="苹果", amount=3), None]
        remaining, drawn = take_one(items, 0)
        assert drawn.item_id == "apple"
        assert drawn.amount == 1
        assert remaining[0].amount == 2
        assert items[0].amount == 3

    def test_take_last_item_empties_slot(self):
        remaining, drawn = take_one([ItemStack(item_id="pear")], 0)
        assert remaining == [None]
        assert drawn.display_name == "pear"

    def test_take_from_empty_slot(self):
        with pytest.raises(ValueError):
            take_one([None], 0)
