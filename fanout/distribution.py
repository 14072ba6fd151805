import random
from typing import List, Optional

from fanout.config import settings
from fanout.errors import ValidationFailure
from fanout.logging_config import get_logger


logger = get_logger(__name__)

SUM_TOLERANCE = 1e-6


def distribute(
    count: int,
    total: float,
    min_amount: float,
    max_amount: float,
    rng: Optional[random.Random] = None,
) -> List[float]:
    """
    Split ``total`` into ``count`` random shares, each in [min_amount, max_amount],
    summing to ``total``.

    Every share but the last is drawn from the range that still leaves the
    remaining recipients a feasible allocation; the last takes the exact
    remainder. When the bounds cannot be met at all the split degrades to an
    even ``total / count`` so the sum is still preserved.
    """
    if count < 1:
        raise ValidationFailure(f"distribution needs at least one recipient, got {count}")
    if min_amount > max_amount:
        raise ValidationFailure(f"min_amount {min_amount} is above max_amount {max_amount}")
    rng = rng or random

    min_total = min_amount * count
    max_total = max_amount * count
    if total < min_total - SUM_TOLERANCE or total > max_total + SUM_TOLERANCE:
        logger.warning(
            "Total outside feasible range, using even split: total=%s count=%s min_total=%s max_total=%s",
            total,
            count,
            min_total,
            max_total,
        )
        return [total / count] * count

    shares: List[float] = []
    remaining = total
    for i in range(count - 1):
        left = count - i
        low = max(min_amount, remaining - max_amount * (left - 1))
        high = min(max_amount, remaining - min_amount * (left - 1))
        if high < low:
            # float drift near a saturated bound
            high = low
        amount = rng.uniform(low, high)
        shares.append(amount)
        remaining -= amount
    shares.append(remaining)

    _check_distribution(shares, total, min_amount, max_amount)
    logger.info(
        "Generated constrained distribution: count=%s total=%.9f shares=%s",
        count,
        total,
        [f"{s:.9f}" for s in shares],
    )
    return shares


def _check_distribution(shares: List[float], total: float, min_amount: float, max_amount: float) -> bool:
    actual = sum(shares)
    in_range = all(min_amount - SUM_TOLERANCE <= s <= max_amount + SUM_TOLERANCE for s in shares)
    if not in_range or abs(actual - total) >= SUM_TOLERANCE:
        logger.error(
            "Distribution constraints violated: shares=%s actual_total=%.9f expected_total=%.9f in_range=%s",
            [f"{s:.9f}" for s in shares],
            actual,
            total,
            in_range,
        )
        return False
    return True


def random_distribution(count: int, total: Optional[float] = None, rng: Optional[random.Random] = None) -> List[float]:
    total = total if total is not None else settings.distribution_total_sol
    return distribute(count, total, settings.distribution_min_sol, settings.distribution_max_sol, rng=rng)
