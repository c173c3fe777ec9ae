#!/usr/bin/env python3
"""
Installation check for LDAP Lifecycle.

Run it after ``pip install -e .[test]``. It confirms that the libraries and
the package import, then pushes one synthetic account through the offline
engine: normalization, expiry, reminder selection, history reconciliation
against an in-memory database, audit classification and the workbook. No
directory, mail server or configuration file is needed.
"""

import sys
import subprocess
import importlib
from datetime import datetime, timedelta, timezone

REQUIRED = {'ldap3': 'ldap3', 'PyYAML': 'yaml', 'SQLAlchemy': 'sqlalchemy', 'openpyxl': 'openpyxl'}
OPTIONAL = {'pytest': 'pytest', 'pytest-mock': 'pytest_mock'}
PACKAGE_MODULES = ('config', 'errors', 'models', 'normalizer', 'password_status', 'notifications',
                   'database', 'history', 'audit', 'reporting', 'ldap_client', 'directory', 'main')

ADMINS = 'CN=Domain Admins,CN=Users,DC=example,DC=com'


def report(ok, label, detail=''):
    print(f"  {'✓' if ok else '✗'} {label}{': ' + detail if detail else ''}")
    return ok


def importable(label, module_name):
    try:
        importlib.import_module(module_name)
    except ImportError as e:
        return report(False, label, str(e))
    return report(True, label)


def check_imports():
    print("=== Libraries ===")
    results = [importable(name, module) for name, module in REQUIRED.items()]
    print("  (test extras)")
    for name, module in OPTIONAL.items():
        importable(name, module)

    print("\n=== Package ===")
    results += [importable(f"ldap_lifecycle.{name}", f"ldap_lifecycle.{name}") for name in PACKAGE_MODULES]
    return all(results)


def synthetic_user(now):
    from ldap_lifecycle.normalizer import RawEntry, normalize_entry
    from ldap_lifecycle.password_status import WINDOWS_EPOCH

    since_epoch = (now - timedelta(days=80)) - WINDOWS_EPOCH
    ticks = (since_epoch.days * 86400 + since_epoch.seconds) * 10_000_000
    return normalize_entry(RawEntry('CN=Test User,OU=Staff,DC=example,DC=com', {
        'sAMAccountName': 'tuser', 'cn': 'Test User', 'displayName': 'Test User',
        'mail': 'tuser@example.com', 'userAccountControl': '512', 'pwdLastSet': str(ticks),
        'memberOf': [ADMINS],
    }))


def check_engine():
    print("\n=== Offline engine ===")
    from ldap_lifecycle.password_status import compute_password_status
    from ldap_lifecycle.notifications import select_notifications
    from ldap_lifecycle.database import create_session_factory, init_db
    from ldap_lifecycle.history import HistorySyncService
    from ldap_lifecycle.audit import classify
    from ldap_lifecycle.reporting import create_audit_workbook

    now = datetime.now(timezone.utc)
    user = synthetic_user(now)

    status = compute_password_status(user, 90, now=now)
    ok = report(status.days_until_expiration in (9, 10), "password expiry",
                f"{status.days_until_expiration} days left")

    selected, _ = select_notifications([status], 14, {})
    ok &= report(bool(selected) and selected[0].address == 'tuser@example.com', "reminder selection")

    session_factory = create_session_factory("sqlite://")
    init_db(session_factory)
    result = HistorySyncService(session_factory).sync([user])
    ok &= report(result.inserted == 1, "history reconciliation", result.message)

    rows = classify([user], [], [], [ADMINS], [])
    ok &= report(rows[0].is_privileged and bool(create_audit_workbook(rows)), "audit workbook")
    return ok


def check_cli():
    print("\n=== Command line ===")
    completed = subprocess.run([sys.executable, "-m", "ldap_lifecycle.main", "--help"],
                               capture_output=True, text=True)
    return report(completed.returncode == 0, "ldap-lifecycle --help", completed.stderr.strip())


def main():
    print("LDAP Lifecycle - Installation Validation")
    print("=" * 50)

    passed = check_imports()
    if passed:
        try:
            passed = check_engine()
        except Exception as e:
            passed = report(False, "offline engine", f"{type(e).__name__}: {e}")
        passed = check_cli() and passed

    print("\n=== Summary ===")
    if not passed:
        print("✗ Some checks failed, resolve them before running against a directory.")
        return 1

    print("✓ All checks passed\n\nNext steps:")
    print("  1. Fill in the ldap, database and password_policy sections of config.yaml")
    print("  2. Create the tables: ldap-lifecycle init-db")
    print("  3. Check connectivity: ldap-lifecycle health-check")
    print("  4. Check mail delivery: ldap-lifecycle test-email")
    return 0


if __name__ == "__main__":
    sys.exit(main())
