"""
Referral reward policy.
"""

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class RewardPolicy:
    """How long a referral grant lasts.

    Every referral earns ``boost``. When the referrer's running referral
    count hits a multiple of ``bonus_threshold`` the grant uses ``bonus``
    instead. A threshold of 0 disables the bonus.
    """
    boost: timedelta = timedelta(days=7)
    bonus: timedelta = timedelta(days=30)
    bonus_threshold: int = 5

    def duration_for(self, referral_number: int) -> timedelta:
        if self.bonus_threshold > 0 and referral_number > 0 and referral_number % self.bonus_threshold == 0:
            return self.bonus
        return self.boost
