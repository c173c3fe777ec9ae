"""
Data models shared by the directory, history and audit components.

Records built from directory entries are plain dataclasses with a fixed
shape; nothing downstream of the normalizer touches raw attribute maps.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional

ACTIVE = "Active"
INACTIVE = "Inactive"
# Status written to the history ledger when an identity leaves the directory
DEPARTED = "inActive"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime the way the history ledger and reports expect."""
    if value is None:
        return None
    return value.strftime(TIMESTAMP_FORMAT)


@dataclass
class NormalizedUser:
    """Identity snapshot extracted from a single directory entry."""
    sam_account_name: str = ""
    display_name: str = ""
    common_name: str = ""
    surname: str = ""
    given_name: str = ""
    user_principal_name: str = ""
    email: str = ""
    telephone_number: str = ""
    title: str = ""
    department: str = ""
    company: str = ""
    description: str = ""
    street_address: str = ""
    distinguished_name: str = ""
    member_of: List[str] = field(default_factory=list)
    is_active: str = ACTIVE
    user_account_control: int = 0
    pwd_last_set: str = ""

    @property
    def is_enabled(self) -> bool:
        return self.is_active == ACTIVE

    @property
    def member_of_text(self) -> str:
        """Group membership flattened the way the history ledger stores it."""
        return ", ".join(self.member_of)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PasswordStatus:
    """
    Password expiry state of one account.

    last_set, expires_on and days_until_expiration are either all populated
    or all None.
    """
    user: NormalizedUser
    never_expires: bool = False
    last_set: Optional[datetime] = None
    expires_on: Optional[datetime] = None
    days_until_expiration: Optional[int] = None
    max_age_days: Optional[int] = None

    @property
    def must_change_password(self) -> bool:
        """True when pwdLastSet is 0, i.e. the user must change it at next logon."""
        return self.user.pwd_last_set.strip() == "0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user': self.user.to_dict(),
            'never_expires': self.never_expires,
            'must_change_password': self.must_change_password,
            'last_set': format_timestamp(self.last_set),
            'expires_on': format_timestamp(self.expires_on),
            'days_until_expiration': self.days_until_expiration,
            'max_age_days': self.max_age_days,
        }


@dataclass
class Notification:
    """A password status selected for notification with its resolved address."""
    status: PasswordStatus
    address: str
    source: str  # 'mapping', 'mail' or 'userPrincipalName'


@dataclass
class HistoryEntry:
    """One row of the append-only user history ledger."""
    identity_key: str
    is_active: str
    department: str = ""
    member_of: str = ""
    street_address: str = ""
    email: str = ""
    update_time: str = ""
    id: Optional[int] = None

    TRACKED_FIELDS = ('is_active', 'department', 'member_of', 'street_address', 'email')

    @classmethod
    def from_user(cls, user: NormalizedUser, update_time: str) -> 'HistoryEntry':
        return cls(
            identity_key=user.common_name,
            is_active=user.is_active,
            department=user.department,
            member_of=user.member_of_text,
            street_address=user.street_address,
            email=user.email,
            update_time=update_time,
        )

    def differs_from(self, other: 'HistoryEntry') -> bool:
        """True when any tracked field differs from another entry."""
        return any(getattr(self, name) != getattr(other, name) for name in self.TRACKED_FIELDS)


@dataclass
class ReconcileResult:
    """Decisions produced by one history reconciliation."""
    inserts: List[HistoryEntry] = field(default_factory=list)
    appends: List[HistoryEntry] = field(default_factory=list)
    deactivations: List[HistoryEntry] = field(default_factory=list)
    total_processed: int = 0
    skipped: int = 0


@dataclass
class SyncResult:
    """Summary of a directory-to-database history sync."""
    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    inactivated: int = 0
    skipped: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditReportRow:
    """One line of the account audit report."""
    sam_account_name: str
    is_privileged: bool
    display_name: str
    is_enabled: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OperationResult:
    """Generic success/failure result for operations that report instead of raising."""
    success: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AccountCreateResult(OperationResult):
    distinguished_name: str = ""


@dataclass
class NewAccount:
    """Attributes supplied when creating a directory account."""
    sam_account_name: str
    surname: str = ""
    given_name: str = ""
    department: str = ""
    title: str = ""
    description: str = ""
    street_address: str = ""


@dataclass
class AccountUpdate:
    """
    Attribute changes for an existing account.

    Only fields that are not None are written to the directory.
    """
    description: Optional[str] = None
    office: Optional[str] = None
    employee_id: Optional[str] = None
    department: Optional[str] = None
    title: Optional[str] = None

    # Directory attribute each field is written to
    ATTRIBUTE_MAP = {
        'description': 'description',
        'office': 'physicalDeliveryOfficeName',
        'employee_id': 'streetAddress',
        'department': 'department',
        'title': 'title',
    }

    def changes(self) -> Dict[str, str]:
        return {
            attribute: getattr(self, name)
            for name, attribute in self.ATTRIBUTE_MAP.items()
            if getattr(self, name) is not None
        }


@dataclass
class RoleMapping:
    """Organizational unit and default groups for a department."""
    role: str
    basic_dn: str
    group_dns: List[str] = field(default_factory=list)
