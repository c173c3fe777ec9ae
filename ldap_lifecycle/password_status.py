"""
Password expiry calculation from Active Directory timestamps.

pwdLastSet is a Windows FILETIME: the number of 100-nanosecond intervals
since 1601-01-01T00:00:00Z. A value of 0 means the user must change the
password at next logon and carries no expiry date.
"""

import math
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from ldap_lifecycle.models import NormalizedUser, PasswordStatus
from ldap_lifecycle.normalizer import password_never_expires

logger = logging.getLogger(__name__)

WINDOWS_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
SECONDS_PER_DAY = 86400


def parse_ticks(value: Union[str, int, None]) -> int:
    """Parse a raw tick count, treating anything unparseable as 0."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def filetime_to_utc(ticks: int) -> Optional[datetime]:
    """Convert a Windows tick count to an aware UTC datetime, or None if out of range."""
    if ticks <= 0:
        return None
    try:
        return WINDOWS_EPOCH + timedelta(microseconds=ticks // 10)
    except OverflowError:
        return None


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole days from earlier to later, floored so past instants are negative."""
    return math.floor((later - earlier).total_seconds() / SECONDS_PER_DAY)


def compute_password_status(user: NormalizedUser, max_age_days: int,
                            now: Optional[datetime] = None) -> PasswordStatus:
    """
    Compute the password expiry state of one account.

    Args:
        user: Normalized directory user
        max_age_days: Domain maximum password age in days
        now: Reference time (aware); defaults to the current local time

    Returns:
        PasswordStatus with expiry fields set only for a real, expiring password
    """
    status = PasswordStatus(
        user=user,
        never_expires=password_never_expires(user.user_account_control),
        max_age_days=max_age_days,
    )

    if status.never_expires:
        return status

    last_set_utc = filetime_to_utc(parse_ticks(user.pwd_last_set))
    if last_set_utc is None:
        return status

    try:
        expires_utc = last_set_utc + timedelta(days=max_age_days)
    except OverflowError:
        logger.debug(f"Expiry out of range for {user.sam_account_name}")
        return status

    reference = now or datetime.now(timezone.utc)
    status.last_set = last_set_utc.astimezone()
    status.expires_on = expires_utc.astimezone()
    status.days_until_expiration = days_between(status.expires_on, reference)
    return status
