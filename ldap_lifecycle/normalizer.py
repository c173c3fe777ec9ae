"""
Normalization of raw directory entries into NormalizedUser records.

Every attribute lookup is safe: a missing or unreadable attribute yields an
empty string instead of failing the whole record.
"""

import re
import logging
from typing import Any, Iterable, List, Mapping, Optional, Union

from ldap3.utils.ciDict import CaseInsensitiveDict

from ldap_lifecycle.models import NormalizedUser, ACTIVE, INACTIVE

logger = logging.getLogger(__name__)

# userAccountControl flags
ACCOUNTDISABLE = 0x0002
DONT_EXPIRE_PASSWORD = 0x10000

# Split on the first RDN separator that is not an escaped comma
_RDN_SEPARATOR = re.compile(r'(?<!\\),')


class RawEntry:
    """
    A directory entry as returned by a search: its DN and attribute bag.

    Attribute names are case-insensitive and every value is kept as a list
    of strings in the order the directory returned them.
    """

    def __init__(self, dn: str, attributes: Optional[Mapping[str, Any]] = None):
        self.dn = dn or ""
        self.attributes = CaseInsensitiveDict()
        for name, value in (attributes or {}).items():
            self.attributes[name] = _as_list(value)

    def values(self, name: str) -> List[str]:
        try:
            return list(self.attributes.get(name) or [])
        except (KeyError, TypeError):
            return []

    def __repr__(self):
        return f"RawEntry(dn={self.dn!r})"


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [_as_text(item) for item in value if item is not None]
    return [_as_text(value)]


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


def safe_attribute(entry: RawEntry, name: str) -> str:
    """Return the first value of an attribute, or an empty string."""
    if entry is None or not name:
        return ""
    try:
        values = entry.values(name)
        return values[0] if values else ""
    except Exception as e:
        logger.debug(f"Unreadable attribute {name} on {getattr(entry, 'dn', '?')}: {e}")
        return ""


def group_short_name(dn: str) -> str:
    """
    Reduce a group DN to its leading RDN value.

    'CN=Accounting,OU=Groups,DC=example,DC=com' becomes 'Accounting'.
    """
    if not dn:
        return ""
    first = _RDN_SEPARATOR.split(dn, maxsplit=1)[0].strip()
    if '=' in first:
        first = first.split('=', 1)[1]
    return first.strip()


def group_short_names(dns: Iterable[str]) -> List[str]:
    return [name for name in (group_short_name(dn) for dn in dns or []) if name]


def parse_account_control(value: Union[str, int, None]) -> int:
    """Parse userAccountControl, treating anything unparseable as 0."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def active_status(account_control: int) -> str:
    return INACTIVE if account_control & ACCOUNTDISABLE else ACTIVE


def password_never_expires(account_control: int) -> bool:
    return bool(account_control & DONT_EXPIRE_PASSWORD)


def normalize_entry(entry: RawEntry) -> NormalizedUser:
    """Build a NormalizedUser from a raw directory entry."""
    account_control = parse_account_control(safe_attribute(entry, 'userAccountControl'))

    return NormalizedUser(
        sam_account_name=safe_attribute(entry, 'sAMAccountName'),
        display_name=safe_attribute(entry, 'displayName'),
        common_name=safe_attribute(entry, 'cn'),
        surname=safe_attribute(entry, 'sn'),
        given_name=safe_attribute(entry, 'givenName'),
        user_principal_name=safe_attribute(entry, 'userPrincipalName'),
        email=safe_attribute(entry, 'mail'),
        telephone_number=safe_attribute(entry, 'telephoneNumber'),
        title=safe_attribute(entry, 'title'),
        department=safe_attribute(entry, 'department'),
        company=safe_attribute(entry, 'company'),
        description=safe_attribute(entry, 'description'),
        street_address=safe_attribute(entry, 'streetAddress'),
        distinguished_name=entry.dn or safe_attribute(entry, 'distinguishedName'),
        member_of=group_short_names(entry.values('memberOf')),
        is_active=active_status(account_control),
        user_account_control=account_control,
        pwd_last_set=safe_attribute(entry, 'pwdLastSet'),
    )
