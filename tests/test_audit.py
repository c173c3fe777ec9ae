#!/usr/bin/env python3
"""
Tests for audit classification and report ordering.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_lifecycle.audit import (
    classify, classify_with_policy, in_excluded_ou, sort_report_rows, sort_report_rows_by_passes
)
from ldap_lifecycle.config import AuditPolicy
from ldap_lifecycle.models import ACTIVE, INACTIVE, AuditReportRow, NormalizedUser

ADMINS = 'CN=Domain Admins,CN=Users,DC=example,DC=com'
SERVICE = 'CN=Service Accounts,OU=Groups,DC=example,DC=com'


def member(login, groups=(), ou='OU=Staff', active=ACTIVE, display_name=None):
    return NormalizedUser(
        sam_account_name=login,
        display_name=display_name if display_name is not None else login.title(),
        distinguished_name=f'CN={login},{ou},DC=example,DC=com',
        member_of=list(groups),
        is_active=active,
    )


class TestClassify(unittest.TestCase):
    """Test cases for exclusion and privilege rules."""

    def test_privileged_by_group(self):
        rows = classify([member('alice', ['Domain Admins']), member('bob', ['Staff'])],
                        [], [], [ADMINS], [])

        self.assertEqual([(row.sam_account_name, row.is_privileged) for row in rows],
                         [('alice', True), ('bob', False)])

    def test_group_match_ignores_case(self):
        rows = classify([member('alice', ['domain admins'])], [], [], [ADMINS], [])
        self.assertTrue(rows[0].is_privileged)

    def test_explicit_accounts_override_groups(self):
        users = [member('alice', ['Domain Admins']), member('bob', ['Staff'])]

        rows = classify(users, [], [], [ADMINS], ['BOB'])

        self.assertEqual([(row.sam_account_name, row.is_privileged) for row in rows],
                         [('alice', False), ('bob', True)])

    def test_excluded_ou_dropped(self):
        users = [member('svc-backup', ou='OU=Service,OU=Infra'), member('alice')]

        rows = classify(users, ['OU=Service'], [], [], [])

        self.assertEqual([row.sam_account_name for row in rows], ['alice'])

    def test_excluded_group_dropped(self):
        rows = classify([member('svc-sql', ['Service Accounts']), member('alice')], [], [SERVICE], [], [])
        self.assertEqual([row.sam_account_name for row in rows], ['alice'])

    def test_disabled_accounts_kept_and_flagged(self):
        rows = classify([member('carol', active=INACTIVE)], [], [], [], [])
        self.assertFalse(rows[0].is_enabled)

    def test_blank_ou_entries_ignored(self):
        self.assertFalse(in_excluded_ou(member('alice'), ['']))

    def test_with_policy(self):
        policy = AuditPolicy(excluded_ous=('OU=Service',), privileged_groups=(ADMINS,))
        users = [member('alice', ['Domain Admins']), member('svc', ou='OU=Service')]

        rows = classify_with_policy(users, policy)

        self.assertEqual(len(rows), 1)
        self.assertTrue(rows[0].is_privileged)


class TestReportOrdering(unittest.TestCase):
    """Test cases for audit report ordering."""

    def setUp(self):
        self.rows = [
            AuditReportRow('carol', False, 'Carol', True),
            AuditReportRow('bob', False, 'Bob', False),
            AuditReportRow('Alice', True, 'Alice', True),
            AuditReportRow('dave', True, 'Dave', False),
            AuditReportRow('aaron', False, 'Aaron', True),
        ]
        self.expected = ['Alice', 'aaron', 'carol', 'dave', 'bob']

    def test_enabled_then_privileged_then_login(self):
        self.assertEqual([row.sam_account_name for row in sort_report_rows(self.rows)], self.expected)

    def test_single_key_passes_agree(self):
        self.assertEqual([row.sam_account_name for row in sort_report_rows_by_passes(self.rows)], self.expected)

    def test_sort_does_not_modify_input(self):
        before = list(self.rows)
        sort_report_rows(self.rows)
        self.assertEqual(self.rows, before)


if __name__ == '__main__':
    unittest.main()
