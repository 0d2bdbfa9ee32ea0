"""Rolling-window date helpers. All values are naive UTC."""

from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def window_start(now: datetime, window_months: int) -> datetime:
    """Lower bound of the rolling window anchored at `now`."""
    return now - relativedelta(months=window_months)


def reward_expiry(earned_at: datetime, window_months: int) -> datetime:
    return earned_at + relativedelta(months=window_months)
