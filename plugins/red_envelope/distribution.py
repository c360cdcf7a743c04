import random
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from .models import CENT, ZERO, EnvelopeKind, ItemStack


ITEM_CLAIM_AMOUNT = Decimal("1")

RANDOM_MIN_FACTOR = Decimal("0.1")  # 最小 10%
RANDOM_MAX_FACTOR = Decimal("3.0")  # 最大 300%


def average_amount(total_amount: Decimal, count: int) -> Decimal:
    """Flat share, rounded down to the cent so the shares never exceed the total"""
    return (Decimal(total_amount) / count).quantize(CENT, rounding=ROUND_DOWN)


def random_amount(
    total_amount: Decimal,
    count: int,
    claimed_amount: Decimal = ZERO,
    claimed_count: int = 0,
    rng: Optional[random.Random] = None,
) -> Decimal:
    """
    Draw one random share.

    Every claim draws independently and uniformly from 10%..300% of the even
    share, clamped to the total and rounded to the cent. The draw is then
    capped by what is left unreserved, keeping back one cent for each claimant
    still to come, so the shares never add up to more than the total. They may
    add up to less.
    """
    rng = rng or random
    total_amount = Decimal(total_amount)

    if count == 1:
        return total_amount.quantize(CENT)

    base = total_amount / count
    low = base * RANDOM_MIN_FACTOR
    high = base * RANDOM_MAX_FACTOR
    amount = Decimal(str(rng.uniform(float(low), float(high))))
    amount = min(amount, total_amount).quantize(CENT, rounding=ROUND_HALF_UP)

    still_to_come = max(0, count - claimed_count - 1)
    cap = Decimal(total_amount) - Decimal(claimed_amount) - CENT * still_to_come
    return max(CENT, min(amount, cap))


def compute_amount(
    kind: EnvelopeKind,
    total_amount: Decimal,
    count: int,
    claimed_amount: Decimal = ZERO,
    claimed_count: int = 0,
    rng: Optional[random.Random] = None,
) -> Decimal:
    if kind is EnvelopeKind.AVERAGE:
        return average_amount(total_amount, count)
    if kind is EnvelopeKind.RANDOM:
        return random_amount(total_amount, count, claimed_amount, claimed_count, rng)
    return ITEM_CLAIM_AMOUNT


def pick_slot(
    items: List[Optional[ItemStack]], rng: Optional[random.Random] = None
) -> Optional[int]:
    """Pick a random occupied slot, None when every slot is empty"""
    occupied = [i for i, item in enumerate(items) if item is not None and item.amount > 0]
    if not occupied:
        return None
    return (rng or random).choice(occupied)


def take_one(
    items: List[Optional[ItemStack]], slot: int
) -> Tuple[List[Optional[ItemStack]], ItemStack]:
    """Remove a single item from ``slot``; the slot empties when the stack runs out"""
    stack = items[slot]
    if stack is None:
        raise ValueError(f"Slot {slot} is empty")

    remaining = list(items)
    if stack.amount > 1:
        remaining[slot] = stack.model_copy(update={"amount": stack.amount - 1})
    else:
        remaining[slot] = None
    return remaining, stack.model_copy(update={"amount": 1})
