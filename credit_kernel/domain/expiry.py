"""
Expiry -- lot expiry time from a credit type's policy.

Pure calendar arithmetic, all in UTC.  For the period policies the lot
lives for ``validity_period`` days (0 when unset) and then until the end of
the month / quarter / year that day falls in.
"""

from datetime import date, datetime, time, timedelta, timezone

from credit_kernel.domain.clock import as_utc
from credit_kernel.domain.credit_type import CreditType, ExpirationPolicy


def _start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def _next_month_start(moment: datetime) -> datetime:
    if moment.month == 12:
        return _start_of_day(date(moment.year + 1, 1, 1))
    return _start_of_day(date(moment.year, moment.month + 1, 1))


def _next_quarter_start(moment: datetime) -> datetime:
    first_month_of_next = ((moment.month - 1) // 3 + 1) * 3 + 1
    if first_month_of_next > 12:
        return _start_of_day(date(moment.year + 1, 1, 1))
    return _start_of_day(date(moment.year, first_month_of_next, 1))


def _next_year_start(moment: datetime) -> datetime:
    return _start_of_day(date(moment.year + 1, 1, 1))


def compute_expiry_time(credit_type: CreditType, created_at: datetime) -> datetime | None:
    """
    Expiry instant of an income lot created at ``created_at``.

    Returns None when the lot never expires.  A lot is expired at any
    reference time >= the returned instant.
    """
    created_at = as_utc(created_at)
    policy = credit_type.expiration_policy
    days = credit_type.validity_period

    if policy is ExpirationPolicy.NEVER_EXPIRE:
        return None

    if policy in (ExpirationPolicy.FIXED_DAYS, ExpirationPolicy.FIFO):
        if days is None:
            return None
        return created_at + timedelta(days=days)

    if policy is ExpirationPolicy.FIXED_DATE:
        if credit_type.fixed_expiry_date is None:
            return None
        return _start_of_day(credit_type.fixed_expiry_date + timedelta(days=1))

    base = created_at + timedelta(days=days or 0)
    if policy is ExpirationPolicy.END_OF_MONTH:
        return _next_month_start(base)
    if policy is ExpirationPolicy.END_OF_QUARTER:
        return _next_quarter_start(base)
    if policy is ExpirationPolicy.END_OF_YEAR:
        return _next_year_start(base)

    raise ValueError(f"Unhandled expiration policy: {policy}")


def is_expired(expiry_time: datetime | None, reference_time: datetime) -> bool:
    """Naive arguments are read as UTC."""
    return expiry_time is not None and as_utc(expiry_time) <= as_utc(reference_time)
