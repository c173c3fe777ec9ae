#!/usr/bin/env python3
"""
Unit tests for the LDAP client.
"""

import itertools
import os
import sys
import unittest
from unittest.mock import Mock, patch, MagicMock

from ldap3.core.exceptions import LDAPSocketOpenError, LDAPResponseTimeoutError

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_lifecycle.errors import (
    DirectoryAuthError, DirectoryConnectionError, DirectoryQueryError, DirectoryTimeoutError
)
from ldap_lifecycle.ldap_client import LDAPClient, PAGED_RESULTS_OID, or_filter, equality_filter


def search_entry(dn, **attributes):
    return {'type': 'searchResEntry', 'dn': dn,
            'raw_attributes': {name: [value.encode()] for name, value in attributes.items()}}


def page_result(cookie=None, code=0, description='success'):
    result = {'result': code, 'description': description}
    if cookie is not None:
        result['controls'] = {PAGED_RESULTS_OID: {'value': {'size': 0, 'cookie': cookie}}}
    return result


class TestFilters(unittest.TestCase):
    """Test cases for filter construction."""

    def test_or_filter_escapes_values(self):
        self.assertEqual(or_filter('cn', ['Smith (Jr)', 'a*b']), r'(|(cn=Smith \28Jr\29)(cn=a\2ab))')

    def test_equality_filter(self):
        self.assertEqual(equality_filter('sAMAccountName', 'jdoe'), '(sAMAccountName=jdoe)')


class LDAPClientTestCase(unittest.TestCase):
    """Base class patching the ldap3 Server and Connection."""

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://dc1.example.com:636',
            'bind_dn': 'CN=svc-ldap,OU=Service,DC=example,DC=com',
            'bind_password': 'secret',
            'base_dn': 'DC=example,DC=com',
            'search_time_limit': 30,
            'page_size': 2,
        }
        self.error_config = {'max_retries': 3, 'retry_wait_seconds': 0}

        server_patcher = patch('ldap_lifecycle.ldap_client.Server')
        connection_patcher = patch('ldap_lifecycle.ldap_client.Connection')
        self.mock_server = server_patcher.start()
        self.mock_connection_class = connection_patcher.start()
        self.addCleanup(server_patcher.stop)
        self.addCleanup(connection_patcher.stop)

        self.conn = MagicMock()
        self.conn.open.return_value = True
        self.conn.bind.return_value = True
        self.conn.result = page_result()
        self.conn.response = []
        self.mock_connection_class.return_value = self.conn

    def connected_client(self):
        client = LDAPClient(self.config, self.error_config)
        client.connect()
        return client


class TestConnect(LDAPClientTestCase):
    """Test cases for the service-account connection."""

    def test_connect_success(self):
        client = self.connected_client()

        self.assertTrue(client._connected)
        self.mock_server.assert_called_once()
        kwargs = self.mock_connection_class.call_args[1]
        self.assertEqual(kwargs['user'], self.config['bind_dn'])
        self.assertFalse(kwargs['raise_exceptions'])

    def test_connect_retries_transient_failures(self):
        self.conn.open.side_effect = [LDAPSocketOpenError('refused'), LDAPSocketOpenError('refused'), True]

        client = self.connected_client()

        self.assertTrue(client._connected)
        self.assertEqual(self.conn.open.call_count, 3)

    def test_connect_gives_up_after_max_retries(self):
        self.conn.open.side_effect = LDAPSocketOpenError('refused')

        with self.assertRaises(DirectoryConnectionError):
            LDAPClient(self.config, self.error_config).connect()

        self.assertEqual(self.conn.open.call_count, 3)

    def test_invalid_credentials_not_retried(self):
        self.conn.bind.return_value = False
        self.conn.result = {'result': 49, 'description': 'invalidCredentials'}

        with self.assertRaises(DirectoryAuthError):
            LDAPClient(self.config, self.error_config).connect()

        self.assertEqual(self.conn.bind.call_count, 1)

    def test_context_manager_unbinds(self):
        with LDAPClient(self.config, self.error_config) as client:
            self.assertTrue(client._connected)
        self.conn.unbind.assert_called_once()
        self.assertFalse(client._connected)


class TestSearch(LDAPClientTestCase):
    """Test cases for paged searching."""

    def test_search_requires_connection(self):
        with self.assertRaises(DirectoryQueryError):
            LDAPClient(self.config).search('DC=example,DC=com', '(cn=*)', ['cn'])

    def test_search_follows_paged_cookie(self):
        pages = [
            ([search_entry('CN=A,DC=example,DC=com', cn='A'), {'type': 'searchResRef'}], page_result(b'next')),
            ([search_entry('CN=B,DC=example,DC=com', cn='B')], page_result(b'')),
        ]

        def fake_search(**kwargs):
            response, result = pages.pop(0)
            self.conn.response = response
            self.conn.result = result
            return True

        self.conn.search.side_effect = fake_search
        client = self.connected_client()

        entries = client.search('DC=example,DC=com', '(objectClass=user)', ['cn'])

        self.assertEqual([entry.dn for entry in entries], ['CN=A,DC=example,DC=com', 'CN=B,DC=example,DC=com'])
        self.assertEqual(entries[1].values('cn'), ['B'])
        calls = self.conn.search.call_args_list
        self.assertEqual(len(calls), 2)
        self.assertIsNone(calls[0][1]['paged_cookie'])
        self.assertEqual(calls[1][1]['paged_cookie'], b'next')
        self.assertEqual(calls[0][1]['paged_size'], 2)

    def test_time_limit_result_raises_timeout(self):
        client = self.connected_client()
        self.conn.result = page_result(code=3, description='timeLimitExceeded')

        with self.assertRaises(DirectoryTimeoutError):
            client.search('DC=example,DC=com', '(cn=*)', ['cn'])

    def test_response_timeout_raises_timeout(self):
        client = self.connected_client()
        self.conn.search.side_effect = LDAPResponseTimeoutError('no response')

        with self.assertRaises(DirectoryTimeoutError):
            client.search('DC=example,DC=com', '(cn=*)', ['cn'])

    def test_other_failures_raise_query_error(self):
        client = self.connected_client()
        self.conn.result = page_result(code=1, description='operationsError')

        with self.assertRaises(DirectoryQueryError):
            client.search('DC=example,DC=com', '(cn=*)', ['cn'])

    def test_timeout_is_a_query_error(self):
        self.assertTrue(issubclass(DirectoryTimeoutError, DirectoryQueryError))

    def test_expired_deadline_raises_before_next_page(self):
        client = self.connected_client()
        clock = itertools.chain([100.0], itertools.repeat(200.0))
        with patch('ldap_lifecycle.ldap_client.time.monotonic', side_effect=clock):
            with self.assertRaises(DirectoryTimeoutError):
                client.search('DC=example,DC=com', '(cn=*)', ['cn'])
        self.conn.search.assert_not_called()

    def test_unknown_scope(self):
        client = self.connected_client()
        with self.assertRaises(DirectoryQueryError):
            client.search('DC=example,DC=com', '(cn=*)', ['cn'], scope='ONE')


class TestEntryOperations(LDAPClientTestCase):
    """Test cases for existence checks, binds and writes."""

    def test_entry_exists(self):
        client = self.connected_client()
        self.conn.response = [search_entry('CN=A,DC=example,DC=com')]
        self.assertTrue(client.entry_exists('CN=A,DC=example,DC=com'))

    def test_entry_missing(self):
        client = self.connected_client()
        self.conn.result = {'result': 32, 'description': 'noSuchObject'}
        self.assertFalse(client.entry_exists('CN=Ghost,DC=example,DC=com'))

    def test_bind_as_uses_separate_connection(self):
        client = self.connected_client()
        user_conn = MagicMock()
        user_conn.open.return_value = True
        user_conn.bind.return_value = True
        self.mock_connection_class.return_value = user_conn

        self.assertTrue(client.bind_as('CN=Jane,DC=example,DC=com', 'pw'))

        self.assertEqual(self.mock_connection_class.call_args[1]['user'], 'CN=Jane,DC=example,DC=com')
        user_conn.unbind.assert_called_once()
        self.conn.unbind.assert_not_called()

    def test_bind_as_rejected(self):
        client = self.connected_client()
        self.conn.bind.return_value = False
        self.conn.result = {'result': 49, 'description': 'invalidCredentials'}

        self.assertFalse(client.bind_as('CN=Jane,DC=example,DC=com', 'wrong'))

    def test_bind_as_empty_password_never_binds(self):
        client = LDAPClient(self.config)
        self.assertFalse(client.bind_as('CN=Jane,DC=example,DC=com', ''))
        self.mock_connection_class.assert_not_called()

    def test_modify_entry_replaces_values(self):
        client = self.connected_client()
        self.conn.modify.return_value = True

        client.modify_entry('CN=Jane,DC=example,DC=com', {'title': 'Engineer'})

        dn, changes = self.conn.modify.call_args[0]
        self.assertEqual(dn, 'CN=Jane,DC=example,DC=com')
        self.assertEqual(changes['title'][0][1], ['Engineer'])

    def test_modify_failure_raises(self):
        client = self.connected_client()
        self.conn.modify.return_value = False
        self.conn.result = {'result': 50, 'description': 'insufficientAccessRights'}

        with self.assertRaises(DirectoryQueryError) as ctx:
            client.modify_entry('CN=Jane,DC=example,DC=com', {'title': 'Engineer'})
        self.assertIn('insufficientAccessRights', str(ctx.exception))

    def test_existing_group_membership_tolerated(self):
        client = self.connected_client()
        self.conn.modify.return_value = False
        self.conn.result = {'result': 68, 'description': 'entryAlreadyExists'}

        client.add_group_member('CN=VPN,DC=example,DC=com', 'CN=Jane,DC=example,DC=com')

    def test_add_entry_failure_raises(self):
        client = self.connected_client()
        self.conn.add.return_value = False
        self.conn.result = {'result': 68, 'description': 'entryAlreadyExists'}

        with self.assertRaises(DirectoryQueryError):
            client.add_entry('CN=Jane,DC=example,DC=com', ['user'], {'sAMAccountName': 'jdoe'})

    def test_connection_stats(self):
        stats = LDAPClient(self.config).get_connection_stats()
        self.assertFalse(stats['connected'])
        self.assertEqual(stats['page_size'], 2)
        self.assertTrue(stats['use_ssl'])


if __name__ == '__main__':
    unittest.main()
