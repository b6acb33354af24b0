"""
Fixed-window arithmetic shared by every storage backend.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from ..rules.models import QuotaCounter


def roll_window(
    counter: Optional[QuotaCounter],
    user_id: str,
    feature_key: str,
    now: datetime,
    window: timedelta,
) -> QuotaCounter:
    """Return the counter for the window containing ``now``.

    A window covers ``[window_start, window_start + window)``. The first use
    after it ends starts a fresh window at ``now`` with a zero count.
    """
    if counter is None or now >= counter.window_start + window:
        return QuotaCounter(user_id=user_id, feature_key=feature_key, window_start=now, count=0)
    return counter


def apply_consumption(counter: QuotaCounter, limit: Optional[int], enforce: bool = True) -> Tuple[bool, QuotaCounter]:
    """Consume one unit from ``counter`` unless an enforced limit is reached.

    With ``enforce=False`` the unit is always counted.
    """
    if enforce and limit is not None and counter.count >= limit:
        return False, counter
    counter.count += 1
    return True, counter
