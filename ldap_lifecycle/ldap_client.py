"""
LDAP client for connecting to and querying Active Directory.

This module wraps ldap3 with the operations the lifecycle engine needs:
paged searches under a fixed time limit, existence checks, user credential
checks and the narrow write operations used for account provisioning.
Search results are handed back as RawEntry objects built from the raw
attribute values so that nothing depends on ldap3's schema formatting.
"""

import time
import logging
import ssl
from typing import Dict, List, Any, Iterable, Optional

from ldap3 import Server, Connection, SUBTREE, BASE, LEVEL, ALL, Tls, MODIFY_REPLACE, MODIFY_ADD
from ldap3.core.exceptions import (
    LDAPException, LDAPSocketOpenError, LDAPResponseTimeoutError, LDAPTimeLimitExceededResult
)
from ldap3.utils.conv import escape_filter_chars

from ldap_lifecycle.errors import (
    DirectoryConnectionError, DirectoryAuthError, DirectoryQueryError, DirectoryTimeoutError
)
from ldap_lifecycle.normalizer import RawEntry
from ldap_lifecycle.retry import RetryPolicy, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# LDAP result codes
RESULT_SUCCESS = 0
RESULT_TIME_LIMIT_EXCEEDED = 3
RESULT_SIZE_LIMIT_EXCEEDED = 4
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20
RESULT_NO_SUCH_OBJECT = 32
RESULT_INVALID_CREDENTIALS = 49
RESULT_ENTRY_ALREADY_EXISTS = 68

_SCOPES = {
    'SUBTREE': SUBTREE,
    'BASE': BASE,
    'LEVEL': LEVEL,
}


def or_filter(attribute: str, values: Iterable[str]) -> str:
    """Build (|(attr=v1)(attr=v2)...) with every value escaped."""
    clauses = ''.join(f"({attribute}={escape_filter_chars(str(value))})" for value in values)
    return f"(|{clauses})"


def equality_filter(attribute: str, value: str) -> str:
    return f"({attribute}={escape_filter_chars(str(value))})"


class LDAPClient:
    """
    LDAP client bound with the service account.

    A client holds one connection. Callers that need parallel searches
    create one client per worker.
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False) and not self.use_ssl
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.search_time_limit = config.get('search_time_limit', 30)
        self.page_size = config.get('page_size', 1000)

        self.retry_policy = RetryPolicy.from_config(error_config)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Bind with the service account, retrying transient failures.

        Raises:
            DirectoryAuthError: If the service account credentials are rejected
            DirectoryConnectionError: If the server stays unreachable
        """
        if self._connected:
            return True

        self.server = self._create_server()

        try:
            self.retry_policy.call(
                self._open_and_bind,
                retry_on=(LDAPException, DirectoryConnectionError),
                operation="LDAP connection"
            )
        except MaxRetriesExceeded as e:
            raise DirectoryConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            )

        self._connected = True
        logger.info(f"Bound to {self.server_url} as {self.bind_dn}")
        return True

    def _create_server(self) -> Server:
        tls = self._tls() if (self.use_ssl or self.start_tls) else None
        try:
            return Server(self.server_url, use_ssl=self.use_ssl, tls=tls, get_info=ALL,
                          connect_timeout=self.connection_timeout)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Invalid LDAP server {self.server_url}: {e}") from e

    def _tls(self) -> Tls:
        if not self.verify_ssl:
            logger.warning(f"Certificate verification is disabled for {self.server_url}")
        try:
            return Tls(validate=ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE,
                       ca_certs_file=self.ca_cert_file)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Invalid TLS settings: {e}") from e

    def _open(self, user: str, password: str) -> Connection:
        """Open a fresh connection as ``user``, negotiating StartTLS if configured. Not yet bound."""
        connection = Connection(self.server, user=user, password=password, auto_bind=False,
                                receive_timeout=self.receive_timeout, raise_exceptions=False)
        try:
            if not connection.open():
                raise DirectoryConnectionError(f"Failed to open connection: {connection.result}")
            if self.start_tls and not connection.start_tls():
                raise DirectoryConnectionError(f"StartTLS failed: {connection.result}")
        except Exception:
            _safe_unbind(connection)
            raise
        return connection

    def _open_and_bind(self) -> None:
        connection = self._open(self.bind_dn, self.bind_password)
        if not connection.bind():
            code = _result_code(connection)
            _safe_unbind(connection)
            if code == RESULT_INVALID_CREDENTIALS:
                raise DirectoryAuthError(f"Service account bind rejected for {self.bind_dn}")
            raise DirectoryConnectionError(f"Bind failed: {connection.result}")
        self.connection = connection

    def disconnect(self):
        if not self._connected:
            return
        connection, self.connection, self._connected = self.connection, None, False
        _safe_unbind(connection)
        logger.debug(f"Disconnected from {self.server_url}")

    def _require_connection(self):
        if not self._connected:
            raise DirectoryQueryError("Not connected to LDAP server")

    def search(self, base: str, search_filter: str, attributes: List[str],
               scope: str = 'SUBTREE', size_limit: int = 0) -> List[RawEntry]:
        """
        Run a paged search and return every matching entry.

        The whole search must finish within search_time_limit seconds;
        otherwise DirectoryTimeoutError is raised and nothing is returned.

        Args:
            base: Search base DN
            search_filter: LDAP filter string
            attributes: Attribute names to request
            scope: 'SUBTREE', 'BASE' or 'LEVEL'
            size_limit: Maximum number of entries, 0 for no limit

        Returns:
            List of RawEntry objects

        Raises:
            DirectoryTimeoutError: If the time limit is exceeded
            DirectoryQueryError: If the search fails
        """
        self._require_connection()

        search_scope = _SCOPES.get(str(scope).upper())
        if search_scope is None:
            raise DirectoryQueryError(f"Unknown search scope: {scope}")

        logger.debug(f"Searching with filter: {search_filter} in base: {base}")

        deadline = time.monotonic() + self.search_time_limit if self.search_time_limit else None
        entries = []
        cookie = None
        page_count = 0

        while True:
            time_limit = self._remaining_time(deadline, search_filter)
            try:
                self.connection.search(
                    search_base=base,
                    search_filter=search_filter,
                    search_scope=search_scope,
                    attributes=attributes,
                    size_limit=size_limit,
                    time_limit=time_limit,
                    paged_size=self.page_size if scope.upper() != 'BASE' else None,
                    paged_cookie=cookie
                )
            except (LDAPResponseTimeoutError, LDAPTimeLimitExceededResult) as e:
                raise DirectoryTimeoutError(f"Search timed out after {self.search_time_limit}s: {search_filter}") from e
            except LDAPException as e:
                raise DirectoryQueryError(f"LDAP search failed: {e}") from e

            code = _result_code(self.connection)
            if code == RESULT_TIME_LIMIT_EXCEEDED:
                raise DirectoryTimeoutError(f"Search timed out after {self.search_time_limit}s: {search_filter}")
            if code not in (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED):
                raise DirectoryQueryError(f"Search failed: {self.connection.result}")

            page_count += 1
            page = self._collect_entries()
            entries.extend(page)
            logger.debug(f"Page {page_count}: Retrieved {len(page)} entries")

            if code == RESULT_SIZE_LIMIT_EXCEEDED or (size_limit and len(entries) >= size_limit):
                entries = entries[:size_limit] if size_limit else entries
                break

            cookie = _paged_cookie(self.connection)
            if not cookie:
                break

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    def _remaining_time(self, deadline: Optional[float], search_filter: str) -> int:
        if deadline is None:
            return 0
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DirectoryTimeoutError(f"Search timed out after {self.search_time_limit}s: {search_filter}")
        return max(1, int(remaining))

    def _collect_entries(self) -> List[RawEntry]:
        entries = []
        for item in self.connection.response or []:
            if item.get('type') != 'searchResEntry':
                continue
            entries.append(RawEntry(item.get('dn', ''), item.get('raw_attributes') or {}))
        return entries

    def entry_exists(self, dn: str) -> bool:
        """
        Check whether a DN exists.

        Returns:
            True if the entry exists, False on noSuchObject

        Raises:
            DirectoryQueryError: For any other search failure
        """
        self._require_connection()

        try:
            self.connection.search(
                search_base=dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['objectClass'],
                size_limit=1,
                time_limit=self.search_time_limit
            )
        except LDAPException as e:
            raise DirectoryQueryError(f"Existence check failed for {dn}: {e}") from e

        code = _result_code(self.connection)
        if code == RESULT_NO_SUCH_OBJECT:
            logger.debug(f"Entry does not exist: {dn}")
            return False
        if code != RESULT_SUCCESS:
            raise DirectoryQueryError(f"Existence check failed for {dn}: {self.connection.result}")
        return bool(self._collect_entries())

    def bind_as(self, dn: str, password: str) -> bool:
        """
        Verify a user's credentials on a separate connection.

        Returns:
            True if the bind succeeds, False if the credentials are rejected

        Raises:
            DirectoryConnectionError: If the server cannot be reached
        """
        # An empty password would be an unauthenticated bind, which AD accepts
        if not dn or not password:
            return False

        if self.server is None:
            self.server = self._create_server()

        try:
            connection = self._open(dn, password)
        except LDAPSocketOpenError as e:
            raise DirectoryConnectionError(f"Failed to connect to LDAP server: {e}") from e

        try:
            if connection.bind():
                return True
            if _result_code(connection) != RESULT_INVALID_CREDENTIALS:
                logger.warning(f"User bind failed for {dn}: {connection.result}")
            return False
        except LDAPException as e:
            logger.warning(f"User bind failed for {dn}: {e}")
            return False
        finally:
            _safe_unbind(connection)

    def add_entry(self, dn: str, object_classes: List[str], attributes: Dict[str, Any]) -> None:
        """Create a directory entry, raising DirectoryQueryError on failure."""
        self._require_connection()
        try:
            success = self.connection.add(dn, object_classes, attributes)
        except LDAPException as e:
            raise DirectoryQueryError(f"Failed to add {dn}: {e}") from e
        if not success:
            raise DirectoryQueryError(f"Failed to add {dn}: {_result_description(self.connection)}")
        logger.info(f"Added directory entry {dn}")

    def modify_entry(self, dn: str, changes: Dict[str, str]) -> None:
        """Replace the given attributes on an entry."""
        self._require_connection()
        modifications = {
            attribute: [(MODIFY_REPLACE, [value])]
            for attribute, value in changes.items()
        }
        try:
            success = self.connection.modify(dn, modifications)
        except LDAPException as e:
            raise DirectoryQueryError(f"Failed to modify {dn}: {e}") from e
        if not success:
            raise DirectoryQueryError(f"Failed to modify {dn}: {_result_description(self.connection)}")
        logger.info(f"Modified {', '.join(sorted(changes))} on {dn}")

    def add_group_member(self, group_dn: str, member_dn: str) -> None:
        """Add a member to a group; an existing membership is not an error."""
        self._require_connection()
        try:
            success = self.connection.modify(group_dn, {'member': [(MODIFY_ADD, [member_dn])]})
        except LDAPException as e:
            raise DirectoryQueryError(f"Failed to add {member_dn} to {group_dn}: {e}") from e
        if success:
            logger.info(f"Added {member_dn} to group {group_dn}")
            return
        if _result_code(self.connection) in (RESULT_ATTRIBUTE_OR_VALUE_EXISTS, RESULT_ENTRY_ALREADY_EXISTS):
            logger.info(f"{member_dn} is already a member of {group_dn}")
            return
        raise DirectoryQueryError(
            f"Failed to add {member_dn} to {group_dn}: {_result_description(self.connection)}"
        )

    def test_connection(self) -> bool:
        """Bind if needed and read the root DSE. Never raises."""
        try:
            self.connect()
            return bool(self.connection.search('', '(objectClass=*)', search_scope=BASE,
                                               attributes=['namingContexts'], size_limit=1))
        except (LDAPException, DirectoryConnectionError, DirectoryAuthError) as e:
            logger.debug(f"Connection test against {self.server_url} failed: {e}")
            return False

    def get_connection_stats(self) -> Dict[str, Any]:
        settings = ('server_url', 'use_ssl', 'start_tls', 'verify_ssl', 'bind_dn', 'base_dn',
                    'page_size', 'search_time_limit')
        stats = {name: getattr(self, name) for name in settings}
        stats['connected'] = self._connected

        if self.connection is not None:
            server = self.connection.server
            stats['server_host'] = getattr(server, 'host', None)
            stats['server_port'] = getattr(server, 'port', None)
            stats['bound'] = getattr(self.connection, 'bound', False)
            stats['tls_started'] = getattr(self.connection, 'tls_started', False)
        return stats

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def _result_code(connection) -> Optional[int]:
    result = getattr(connection, 'result', None) or {}
    return result.get('result')


def _result_description(connection) -> str:
    result = getattr(connection, 'result', None) or {}
    description = result.get('description', 'unknown error')
    message = result.get('message')
    return f"{description} ({message})" if message else description


def _paged_cookie(connection) -> Optional[bytes]:
    controls = (getattr(connection, 'result', None) or {}).get('controls') or {}
    return controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')


def _safe_unbind(connection) -> None:
    try:
        connection.unbind()
    except Exception as e:
        logger.debug(f"Error closing LDAP connection: {e}")
