"""
Validity windows and the clock.

A :class:`TemporalWindow` is the half-open interval ``[valid_from, valid_to)``
used by qualifications.  Nothing in this module reads the wall clock except
:func:`current_time`; every other function takes ``now`` explicitly so
callers (and tests) decide which instant they are asking about.
"""
from datetime import datetime, timedelta
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, model_validator


def current_time() -> datetime:
    """Return the current local time (naive), the engine's only clock read."""
    return datetime.now()


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Express an aware datetime as naive local time; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


# Datetime field type: offsets are resolved on the way in so every stored
# instant compares with the naive clock.
LocalDatetime = Annotated[datetime, AfterValidator(to_local_naive)]


class TemporalWindow(BaseModel):
    valid_from: LocalDatetime
    valid_to: LocalDatetime

    @model_validator(mode="after")
    def _check_order(self) -> "TemporalWindow":
        if self.valid_from >= self.valid_to:
            raise ValueError("valid_from must be earlier than valid_to")
        return self

    def contains(self, now: datetime) -> bool:
        # lower bound inclusive, upper bound exclusive
        return self.valid_from <= now < self.valid_to

    def has_ended(self, now: datetime) -> bool:
        return self.valid_to <= now

    def ends_within(self, now: datetime, days: int) -> bool:
        return self.valid_to <= now + timedelta(days=days)

    def remaining_days(self, now: datetime) -> int:
        """Whole calendar days from ``now`` until the window closes, 0 once closed."""
        if self.has_ended(now):
            return 0
        return (self.valid_to.date() - now.date()).days
