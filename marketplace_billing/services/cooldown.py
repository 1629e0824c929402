import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class CooldownInfo:
    is_in_cooldown: bool
    days_remaining: int
    last_change_date: Optional[datetime]
    can_bypass: bool = False

    @property
    def next_change_allowed_at(self) -> Optional[datetime]:
        if not self.is_in_cooldown or self.last_change_date is None:
            return None
        return self.last_change_date + timedelta(days=self.days_remaining)

    def to_dict(self) -> dict:
        return {
            'is_in_cooldown': self.is_in_cooldown,
            'days_remaining': self.days_remaining,
            'last_change_date': self.last_change_date.isoformat() if self.last_change_date else None,
            'can_bypass': self.can_bypass,
        }


def evaluate(
    last_change_at: Optional[datetime],
    now: datetime,
    window_days: int,
    can_bypass: bool = False,
) -> CooldownInfo:
    """
    Decide whether a plan change is still inside the cooldown window.

    days_remaining is ceil(window - elapsed_days) while in cooldown and 0
    otherwise. Identity is never checked here: can_bypass is only echoed back
    and must come from a verified admin actor.
    """
    if last_change_at is None:
        return CooldownInfo(False, 0, None, can_bypass)

    elapsed_days = (now - last_change_at).total_seconds() / SECONDS_PER_DAY
    if elapsed_days >= window_days:
        return CooldownInfo(False, 0, last_change_at, can_bypass)

    days_remaining = math.ceil(window_days - elapsed_days)
    return CooldownInfo(True, days_remaining, last_change_at, can_bypass)
