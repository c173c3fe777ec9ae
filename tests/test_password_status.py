#!/usr/bin/env python3
"""
Unit tests for password expiry calculation.
"""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_lifecycle.models import NormalizedUser
from ldap_lifecycle.password_status import (
    WINDOWS_EPOCH, parse_ticks, filetime_to_utc, days_between, compute_password_status
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def to_ticks(moment: datetime) -> int:
    delta = moment - WINDOWS_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def user_with(pwd_last_set, account_control=512) -> NormalizedUser:
    return NormalizedUser(sam_account_name='jdoe', pwd_last_set=str(pwd_last_set),
                          user_account_control=account_control)


class TestTickConversion(unittest.TestCase):
    """Test cases for Windows FILETIME conversion."""

    def test_parse_ticks_degrades_to_zero(self):
        self.assertEqual(parse_ticks('not a number'), 0)
        self.assertEqual(parse_ticks(''), 0)
        self.assertEqual(parse_ticks(None), 0)
        self.assertEqual(parse_ticks('42'), 42)

    def test_filetime_round_trip(self):
        moment = datetime(2023, 1, 15, 8, 30, tzinfo=timezone.utc)
        self.assertEqual(filetime_to_utc(to_ticks(moment)), moment)

    def test_non_positive_ticks_have_no_time(self):
        self.assertIsNone(filetime_to_utc(0))
        self.assertIsNone(filetime_to_utc(-5))

    def test_out_of_range_ticks_have_no_time(self):
        self.assertIsNone(filetime_to_utc(2 ** 63 - 1))

    def test_days_between_floors(self):
        self.assertEqual(days_between(NOW - timedelta(hours=12), NOW), -1)
        self.assertEqual(days_between(NOW + timedelta(hours=12), NOW), 0)
        self.assertEqual(days_between(NOW + timedelta(days=3), NOW), 3)


class TestComputePasswordStatus(unittest.TestCase):
    """Test cases for compute_password_status."""

    def test_expiration_is_last_set_plus_max_age(self):
        last_set = NOW - timedelta(days=80)
        status = compute_password_status(user_with(to_ticks(last_set)), 90, now=NOW)

        self.assertEqual(status.last_set, last_set)
        self.assertEqual(status.expires_on, last_set + timedelta(days=90))
        self.assertEqual(status.days_until_expiration, 10)
        self.assertEqual(status.max_age_days, 90)
        self.assertFalse(status.never_expires)

    def test_timestamps_are_local_time(self):
        status = compute_password_status(user_with(to_ticks(NOW - timedelta(days=1))), 90, now=NOW)
        self.assertIsNotNone(status.last_set.utcoffset())
        self.assertEqual(status.last_set, NOW - timedelta(days=1))

    def test_half_day_past_expiry_is_minus_one(self):
        last_set = NOW - timedelta(days=90, hours=12)
        status = compute_password_status(user_with(to_ticks(last_set)), 90, now=NOW)
        self.assertEqual(status.days_until_expiration, -1)

    def test_fraction_of_day_past_expiry_is_minus_one(self):
        last_set = NOW - timedelta(days=90) - timedelta(days=0.3)
        status = compute_password_status(user_with(to_ticks(last_set)), 90, now=NOW)
        self.assertEqual(status.days_until_expiration, -1)

    def test_long_expired_is_negative(self):
        last_set = NOW - timedelta(days=120)
        status = compute_password_status(user_with(to_ticks(last_set)), 90, now=NOW)
        self.assertEqual(status.days_until_expiration, -30)

    def test_never_expires_leaves_fields_unset(self):
        status = compute_password_status(user_with(to_ticks(NOW), account_control=0x10200), 90, now=NOW)

        self.assertTrue(status.never_expires)
        self.assertIsNone(status.last_set)
        self.assertIsNone(status.expires_on)
        self.assertIsNone(status.days_until_expiration)

    def test_must_change_at_next_logon(self):
        status = compute_password_status(user_with('0'), 90, now=NOW)

        self.assertTrue(status.must_change_password)
        self.assertIsNone(status.last_set)
        self.assertIsNone(status.expires_on)
        self.assertIsNone(status.days_until_expiration)

    def test_malformed_tick_value_does_not_raise(self):
        status = compute_password_status(user_with('abc'), 90, now=NOW)
        self.assertIsNone(status.days_until_expiration)
        self.assertFalse(status.must_change_password)

    def test_to_dict_formats_timestamps(self):
        last_set = NOW - timedelta(days=10)
        data = compute_password_status(user_with(to_ticks(last_set)), 90, now=NOW).to_dict()

        self.assertEqual(data['last_set'], last_set.astimezone().strftime('%Y-%m-%d %H:%M:%S'))
        self.assertEqual(data['days_until_expiration'], 80)
        self.assertEqual(data['user']['sam_account_name'], 'jdoe')


if __name__ == '__main__':
    unittest.main()
