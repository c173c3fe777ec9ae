"""
Directory operations.

Each public method of DirectoryService is an independent unit of work: it
opens its own service-account connection, does its searches and writes,
and closes the connection before returning. Raw entries are normalized as
soon as they come back from a search.
"""

import re
import asyncio
import logging
import functools
import concurrent.futures
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from ldap3.utils.ciDict import CaseInsensitiveDict

from ldap_lifecycle.audit import classify_with_policy, sort_report_rows
from ldap_lifecycle.config import AuditPolicy, PasswordPolicy
from ldap_lifecycle.errors import (
    DirectoryConnectionError, DirectoryAuthError, DirectoryQueryError, PartialItemError, ValidationError
)
from ldap_lifecycle.ldap_client import LDAPClient, or_filter, equality_filter
from ldap_lifecycle.logging_setup import security_logger
from ldap_lifecycle.models import (
    AccountCreateResult, AccountUpdate, AuditReportRow, NewAccount, NormalizedUser, OperationResult,
    PasswordStatus, RoleMapping
)
from ldap_lifecycle.normalizer import RawEntry, normalize_entry, group_short_name
from ldap_lifecycle.notifications import Mailer, select_notifications, send_password_expiry_notices
from ldap_lifecycle.password_status import compute_password_status

logger = logging.getLogger(__name__)

PASSWORD_ATTRIBUTES = [
    'pwdLastSet', 'sAMAccountName', 'userPrincipalName', 'mail', 'userAccountControl', 'cn', 'displayName'
]
USER_INFO_ATTRIBUTES = [
    'sAMAccountName', 'cn', 'sn', 'givenName', 'userPrincipalName', 'displayName', 'mail',
    'telephoneNumber', 'title', 'department', 'company', 'description', 'streetAddress'
]
ALL_USERS_ATTRIBUTES = USER_INFO_ATTRIBUTES + ['pwdLastSet', 'userAccountControl', 'memberOf']
HISTORY_ATTRIBUTES = ['cn', 'department', 'mail', 'memberOf', 'streetAddress', 'userAccountControl']
AUDIT_ATTRIBUTES = ['sAMAccountName', 'displayName', 'distinguishedName', 'userAccountControl', 'memberOf']

USER_FILTER = '(objectClass=user)'
AUDIT_FILTER = '(&(objectClass=user)(!(objectClass=computer)))'

DIRECT_AUTH_DN_PATTERN = re.compile(r'^CN=[^,]+,OU=[^,]+,DC=[^,]+,DC=[^,]+,DC=[^,]+$', re.IGNORECASE)

NEW_USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'user']
# Normal account (0x200) with PASSWD_NOTREQD (0x20)
NEW_USER_ACCOUNT_CONTROL = '544'

RoleLookup = Callable[[str], Optional[RoleMapping]]


def normalize_entries(entries: Iterable[RawEntry]) -> List[NormalizedUser]:
    """Normalize a batch, skipping any entry that cannot be read."""
    users = []
    for entry in entries:
        try:
            users.append(normalize_entry(entry))
        except Exception as e:
            logger.warning(str(PartialItemError(getattr(entry, 'dn', '?'), str(e))))
    return users


class DirectoryService:
    """Password, history, audit and provisioning operations against Active Directory."""

    def __init__(self, ldap_config: Dict[str, Any], password_policy: PasswordPolicy,
                 audit_policy: AuditPolicy, error_config: Optional[Dict[str, Any]] = None,
                 direct_auth: Optional[Dict[str, Any]] = None,
                 client_factory: Optional[Callable[[], LDAPClient]] = None):
        self.ldap_config = ldap_config
        self.base_dn = ldap_config.get('base_dn', '')
        self.password_policy = password_policy
        self.audit_policy = audit_policy
        self.error_config = error_config or {}
        self.direct_auth = direct_auth or {}
        self.client_factory = client_factory or (lambda: LDAPClient(ldap_config, self.error_config))

        self.lookup_workers = max(1, int(self.error_config.get('lookup_workers', 4)))
        self.lookup_chunk_size = max(1, int(self.error_config.get('lookup_chunk_size', 50)))

    # ------------------------------------------------------------------
    # Password status
    # ------------------------------------------------------------------

    def _statuses(self, users: Iterable[NormalizedUser], now: Optional[datetime]) -> List[PasswordStatus]:
        reference = now or datetime.now(timezone.utc)
        return [compute_password_status(user, self.password_policy.max_age_days, reference) for user in users]

    def check_password_status_and_notify(self, mailer: Optional[Mailer] = None,
                                         now: Optional[datetime] = None) -> List[PasswordStatus]:
        """
        Compute the password status of every configured account and send
        reminders to those within the notification window.

        Reminders are sent after all statuses are computed. A failed send
        is logged and does not affect the others.

        Returns:
            Password status of every account found
        """
        accounts = [account for account in self.password_policy.accounts_to_check if account]
        if not accounts:
            logger.warning("No accounts configured for password expiry check (password_policy.accounts_to_check)")
            return []

        logger.info(f"Starting password expiry check for {len(accounts)} accounts")

        with self.client_factory() as client:
            entries = client.search(self.base_dn, or_filter('sAMAccountName', accounts), PASSWORD_ATTRIBUTES)

        statuses = self._statuses(normalize_entries(entries), now)
        notifications, unresolved = select_notifications(
            statuses, self.password_policy.notification_days, self.password_policy.mail_mapping
        )

        if mailer is not None and mailer.enabled:
            counts = send_password_expiry_notices(notifications, mailer)
            logger.info(f"Password expiry reminders: {counts['sent']} sent, {counts['failed']} failed")
        elif notifications:
            logger.info(f"{len(notifications)} reminders selected but email delivery is disabled")

        logger.info(f"Password expiry check finished: {len(statuses)} accounts processed, "
                    f"{len(notifications)} due for a reminder, {len(unresolved)} without an address")
        return statuses

    def get_user_password_status(self, account_or_cn: str,
                                 now: Optional[datetime] = None) -> Optional[PasswordStatus]:
        """Password status of one account, looked up by login name or common name."""
        if not account_or_cn or not account_or_cn.strip():
            return None
        account_or_cn = account_or_cn.strip()

        search_filter = f"(|{equality_filter('sAMAccountName', account_or_cn)}{equality_filter('cn', account_or_cn)})"
        with self.client_factory() as client:
            entries = client.search(self.base_dn, search_filter, PASSWORD_ATTRIBUTES, size_limit=1)

        users = normalize_entries(entries[:1])
        if not users:
            logger.warning(f"User '{account_or_cn}' not found in directory")
            return None
        return self._statuses(users, now)[0]

    def get_all_users_with_password_status(self, now: Optional[datetime] = None) -> List[PasswordStatus]:
        logger.info("Fetching every directory user with password status")
        with self.client_factory() as client:
            entries = client.search(self.base_dn, USER_FILTER, ALL_USERS_ATTRIBUTES)
        statuses = self._statuses(normalize_entries(entries), now)
        logger.info(f"Computed password status for {len(statuses)} users")
        return statuses

    # ------------------------------------------------------------------
    # Batch lookup
    # ------------------------------------------------------------------

    def _lookup_chunk(self, accounts: List[str]) -> List[NormalizedUser]:
        with self.client_factory() as client:
            entries = client.search(self.base_dn, or_filter('sAMAccountName', accounts), USER_INFO_ATTRIBUTES)
        return normalize_entries(entries)

    def get_users_info(self, accounts: Iterable[str]) -> CaseInsensitiveDict:
        """
        Look up many accounts, keyed case-insensitively by login name.

        Accounts are searched in chunks on a bounded thread pool. A chunk
        whose search fails is logged and skipped.
        """
        users = CaseInsensitiveDict()

        unique = []
        seen = set()
        for account in accounts or []:
            account = (account or '').strip()
            if account and account.lower() not in seen:
                seen.add(account.lower())
                unique.append(account)
        if not unique:
            return users

        chunks = [unique[i:i + self.lookup_chunk_size] for i in range(0, len(unique), self.lookup_chunk_size)]
        logger.info(f"Looking up {len(unique)} accounts in {len(chunks)} chunks")

        with concurrent.futures.ThreadPoolExecutor(max_workers=min(self.lookup_workers, len(chunks))) as executor:
            futures = {executor.submit(self._lookup_chunk, chunk): chunk for chunk in chunks}
            for future in concurrent.futures.as_completed(futures):
                chunk = futures[future]
                try:
                    found = future.result()
                except (DirectoryConnectionError, DirectoryAuthError):
                    raise
                except DirectoryQueryError as e:
                    logger.error(f"Lookup of {len(chunk)} accounts starting at '{chunk[0]}' failed: {e}")
                    continue
                for user in found:
                    if user.sam_account_name:
                        users[user.sam_account_name] = user

        logger.info(f"Found {len(users)} of {len(unique)} requested accounts")
        return users

    # ------------------------------------------------------------------
    # History and audit snapshots
    # ------------------------------------------------------------------

    def fetch_history_snapshot(self) -> List[NormalizedUser]:
        with self.client_factory() as client:
            entries = client.search(self.base_dn, USER_FILTER, HISTORY_ATTRIBUTES)
        users = normalize_entries(entries)
        logger.info(f"Fetched {len(users)} users for history sync")
        return users

    def fetch_audit_users(self) -> List[NormalizedUser]:
        search_base = self.audit_policy.search_base or self.base_dn
        logger.info(f"Fetching audit users below {search_base}")
        with self.client_factory() as client:
            entries = client.search(search_base, AUDIT_FILTER, AUDIT_ATTRIBUTES)
        users = normalize_entries(entries)
        logger.info(f"Fetched {len(users)} users for audit")
        return users

    def generate_audit_report(self) -> List[AuditReportRow]:
        """Audit rows for every included account, in presentation order."""
        rows = sort_report_rows(classify_with_policy(self.fetch_audit_users(), self.audit_policy))
        logger.info(f"Audit report data generated: {len(rows)} rows")
        return rows

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _find_user_dn(self, client: LDAPClient, username: str) -> str:
        search_filter = f"(&(objectClass=user){equality_filter('sAMAccountName', username)})"
        entries = client.search(self.base_dn, search_filter, ['distinguishedName'], size_limit=1)
        return entries[0].dn if entries else ''

    def authenticate_user(self, username: str, password: str) -> bool:
        """Check a user's password: find the DN with the service account, then bind as the user."""
        if not username or not username.strip() or not password:
            logger.warning("Authentication rejected: username or password is empty")
            return False
        username = username.strip()

        with self.client_factory() as client:
            user_dn = self._find_user_dn(client, username)
            if not user_dn:
                logger.warning(f"Authentication failed: user '{username}' not found")
                security_logger.log_authentication_attempt("LDAP", username, False)
                return False
            success = client.bind_as(user_dn, password)

        security_logger.log_authentication_attempt("LDAP", username, success)
        if success:
            logger.info(f"User '{username}' authenticated")
        else:
            logger.warning(f"Authentication failed for '{username}': invalid credentials")
        return success

    def authenticate_direct(self, distinguished_name: Optional[str] = None,
                            password: Optional[str] = None) -> OperationResult:
        """
        Bind directly with a full DN, defaulting to the configured direct-auth account.
        """
        distinguished_name = distinguished_name or self.direct_auth.get('distinguished_name', '')
        password = password or self.direct_auth.get('password', '')

        try:
            self._validate_direct_dn(distinguished_name)
        except ValidationError as e:
            logger.warning(f"Direct bind rejected: {e}")
            return OperationResult(success=False, message=str(e))

        with self.client_factory() as client:
            if not client.entry_exists(distinguished_name):
                logger.warning(f"Direct bind failed: {distinguished_name} does not exist")
                security_logger.log_authentication_attempt("LDAP direct", distinguished_name, False)
                return OperationResult(success=False, message="Authentication failed: user does not exist")
            success = client.bind_as(distinguished_name, password)

        security_logger.log_authentication_attempt("LDAP direct", distinguished_name, success)
        if not success:
            logger.warning(f"Direct bind failed for {distinguished_name}: invalid credentials")
            return OperationResult(success=False, message="Authentication failed: invalid password")

        logger.info(f"Direct bind succeeded for {distinguished_name}")
        return OperationResult(success=True, message=f"{group_short_name(distinguished_name)} Login Successful")

    @staticmethod
    def _validate_direct_dn(distinguished_name: str) -> None:
        if not distinguished_name or not DIRECT_AUTH_DN_PATTERN.match(distinguished_name):
            raise ValidationError("Authentication failed: the distinguished name is not in the expected format")

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def create_user(self, new_user: NewAccount, role_lookup: RoleLookup) -> AccountCreateResult:
        """
        Create an account in the OU mapped to its department and add it to
        the department's default groups.
        """
        try:
            role = self._validate_new_user(new_user, role_lookup)
        except ValidationError as e:
            logger.error(f"Account creation rejected: {e}")
            return AccountCreateResult(success=False, message=str(e))

        common_name = f"{new_user.surname}{new_user.given_name}"
        user_dn = f"cn={common_name},{role.basic_dn}"
        attributes = self._new_user_attributes(new_user, common_name)

        with self.client_factory() as client:
            try:
                client.add_entry(user_dn, NEW_USER_OBJECT_CLASSES, attributes)
                for group_dn in role.group_dns:
                    client.add_group_member(group_dn, user_dn)
            except DirectoryQueryError as e:
                logger.error(f"Creating account {new_user.sam_account_name} failed: {e}")
                security_logger.log_directory_write("create", user_dn, False)
                return AccountCreateResult(success=False, message=f"LDAP error: {e}")

        security_logger.log_directory_write("create", user_dn, True)
        logger.info(f"Account {new_user.sam_account_name} created at {user_dn}")
        return AccountCreateResult(
            success=True,
            message=f"Account {new_user.sam_account_name} created",
            distinguished_name=user_dn
        )

    def _validate_new_user(self, new_user: Optional[NewAccount], role_lookup: RoleLookup) -> RoleMapping:
        if new_user is None or not new_user.sam_account_name or not new_user.sam_account_name.strip():
            raise ValidationError("Account name must not be empty")
        if not new_user.surname and not new_user.given_name:
            raise ValidationError("Surname or given name is required to build the common name")
        role = role_lookup(new_user.department)
        if role is None or not role.basic_dn:
            raise ValidationError(f"No base DN is mapped to department '{new_user.department}'")
        return role

    def _new_user_attributes(self, new_user: NewAccount, common_name: str) -> Dict[str, str]:
        suffix = self.ldap_config.get('user_principal_suffix', '')
        address = f"{new_user.sam_account_name}@{suffix}" if suffix else ''

        attributes = {
            'sAMAccountName': new_user.sam_account_name,
            'cn': common_name,
            'sn': new_user.surname,
            'givenName': new_user.given_name,
            'mail': address,
            'userPrincipalName': address,
            'userPassword': self.ldap_config.get('default_password', ''),
            'displayName': common_name,
            'title': new_user.title,
            'department': new_user.department,
            'description': new_user.description,
            'st': 'M365',
            'streetAddress': new_user.street_address,
            'pwdLastSet': '0',
            'userAccountControl': NEW_USER_ACCOUNT_CONTROL,
        }
        # AD rejects empty attribute values on add
        return {name: value for name, value in attributes.items() if value}

    def update_user(self, username: str, update: Optional[AccountUpdate]) -> OperationResult:
        """Replace the fields of an account that are set on ``update``."""
        if not username or not username.strip():
            return OperationResult(success=False, message="Username must not be empty")
        if update is None:
            return OperationResult(success=False, message="Update data must not be empty")
        username = username.strip()

        logger.info(f"Updating account '{username}'")
        with self.client_factory() as client:
            user_dn = self._find_user_dn(client, username)
            if not user_dn:
                logger.warning(f"Update failed: user '{username}' not found")
                return OperationResult(success=False, message=f"User '{username}' not found")

            changes = update.changes()
            if not changes:
                logger.info(f"No changes supplied for '{username}'")
                return OperationResult(success=True, message="No changes to apply")

            try:
                client.modify_entry(user_dn, changes)
            except DirectoryQueryError as e:
                logger.error(f"Updating '{username}' ({user_dn}) failed: {e}")
                security_logger.log_directory_write("update", user_dn, False)
                return OperationResult(success=False, message=f"LDAP error: {e}")

        security_logger.log_directory_write("update", user_dn, True)
        return OperationResult(success=True, message=f"User '{username}' updated")

    def health_check(self) -> Dict[str, Any]:
        client = self.client_factory()
        try:
            healthy = client.test_connection()
            return {'healthy': healthy, 'connection': client.get_connection_stats()}
        finally:
            client.disconnect()


class AsyncDirectoryService:
    """
    Awaitable wrapper around DirectoryService.

    Every call runs on an executor thread so the event loop keeps serving
    other work while the directory round-trip completes.
    """

    def __init__(self, service: DirectoryService, executor: Optional[concurrent.futures.Executor] = None):
        self.service = service
        self.executor = executor

    async def _run(self, func: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args, **kwargs))

    async def check_password_status_and_notify(self, mailer: Optional[Mailer] = None) -> List[PasswordStatus]:
        return await self._run(self.service.check_password_status_and_notify, mailer)

    async def get_user_password_status(self, account_or_cn: str) -> Optional[PasswordStatus]:
        return await self._run(self.service.get_user_password_status, account_or_cn)

    async def get_users_info(self, accounts: Iterable[str]) -> CaseInsensitiveDict:
        return await self._run(self.service.get_users_info, list(accounts or []))

    async def get_all_users_with_password_status(self) -> List[PasswordStatus]:
        return await self._run(self.service.get_all_users_with_password_status)

    async def fetch_history_snapshot(self) -> List[NormalizedUser]:
        return await self._run(self.service.fetch_history_snapshot)

    async def fetch_audit_users(self) -> List[NormalizedUser]:
        return await self._run(self.service.fetch_audit_users)

    async def generate_audit_report(self) -> List[AuditReportRow]:
        return await self._run(self.service.generate_audit_report)

    async def authenticate_user(self, username: str, password: str) -> bool:
        return await self._run(self.service.authenticate_user, username, password)

    async def authenticate_direct(self, distinguished_name: Optional[str] = None,
                                  password: Optional[str] = None) -> OperationResult:
        return await self._run(self.service.authenticate_direct, distinguished_name, password)

    async def create_user(self, new_user: NewAccount, role_lookup: RoleLookup) -> AccountCreateResult:
        return await self._run(self.service.create_user, new_user, role_lookup)

    async def update_user(self, username: str, update: Optional[AccountUpdate]) -> OperationResult:
        return await self._run(self.service.update_user, username, update)
