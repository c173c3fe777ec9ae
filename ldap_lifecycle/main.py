"""
Command-line entry point for LDAP Lifecycle.

The Orchestrator loads configuration, sets up logging, builds the
directory, database and mail collaborators, runs one command and maps
the outcome to an exit code.
"""

import sys
import json
import getpass
import logging
import argparse
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import text

from ldap_lifecycle.config import load_config, ConfigurationError, PasswordPolicy, AuditPolicy
from ldap_lifecycle.database import create_session_factory, init_db, session_scope, RoleRepository
from ldap_lifecycle.directory import DirectoryService
from ldap_lifecycle.errors import (
    DirectoryError, DirectoryConnectionError, DirectoryAuthError, PersistenceError, LifecycleError
)
from ldap_lifecycle.history import HistorySyncService
from ldap_lifecycle.logging_setup import setup_logging
from ldap_lifecycle.models import AccountUpdate, NewAccount
from ldap_lifecycle.notifications import (
    Mailer,
    send_failure_notification,
    send_directory_connection_failure,
    send_success_summary,
    test_notification_config
)
from ldap_lifecycle.reporting import (
    create_audit_workbook,
    audit_report_filename,
    render_user_info_html,
    format_password_status_text
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_DIRECTORY = 3
EXIT_PERSISTENCE = 4
EXIT_UNEXPECTED = 5

# Commands that run on a schedule and send a success summary
SCHEDULED_COMMANDS = {'password-check', 'sync-history', 'audit-report'}


class Orchestrator:
    """
    Runs one command against the directory and the history database.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Args:
            config_path: Path to configuration file
            config: Already loaded configuration, used instead of config_path
        """
        self.config_path = config_path
        self.config = config
        self.mailer = None
        self._directory = None
        self._session_factory = None

        self.stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

        self.handlers: Dict[str, Callable[[argparse.Namespace], Tuple[Any, int]]] = {
            'password-check': self._password_check,
            'password-status': self._password_status,
            'users-info': self._users_info,
            'sync-history': self._sync_history,
            'audit-report': self._audit_report,
            'user-report': self._user_report,
            'auth': self._auth,
            'auth-dn': self._auth_dn,
            'create-user': self._create_user,
            'update-user': self._update_user,
            'init-db': self._init_db,
        }

    def run(self, args: argparse.Namespace) -> int:
        """
        Run one command.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        command = args.command
        try:
            self.stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            logger.info(f"Starting command: {command}")

            payload, exit_code = self.handlers[command](args)
            self._emit(payload)

            self.stats['end_time'] = datetime.now()
            self.stats['runtime_seconds'] = (self.stats['end_time'] - self.stats['start_time']).total_seconds()
            logger.info(f"Command {command} finished in {self.stats['runtime_seconds']:.2f} seconds "
                        f"with exit code {exit_code}")

            if exit_code == EXIT_OK and command in SCHEDULED_COMMANDS:
                self._send_success_notification(command)
            return exit_code

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIG
        except (DirectoryConnectionError, DirectoryAuthError) as e:
            logger.error(f"LDAP connection error: {e}")
            self._notify(send_directory_connection_failure, str(e), command)
            return EXIT_DIRECTORY
        except DirectoryError as e:
            logger.error(f"Directory error: {e}")
            self._notify(send_failure_notification, f"{command} failed", str(e))
            return EXIT_DIRECTORY
        except PersistenceError as e:
            logger.error(f"Persistence error: {e}")
            self._notify(send_failure_notification, f"{command} failed", str(e))
            return EXIT_PERSISTENCE
        except LifecycleError as e:
            logger.error(f"{command} failed: {e}")
            return EXIT_PARTIAL
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(send_failure_notification, f"{command} failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is None:
            self.config = load_config(self.config_path)
        self.mailer = Mailer(self.config.get('notifications', {}), self.config.get('error_handling', {}))

    @property
    def directory(self) -> DirectoryService:
        if self._directory is None:
            self._directory = DirectoryService(
                self.config['ldap'],
                PasswordPolicy.from_config(self.config),
                AuditPolicy.from_config(self.config),
                error_config=self.config.get('error_handling', {}),
                direct_auth=self.config.get('direct_auth', {}),
            )
        return self._directory

    @property
    def session_factory(self):
        if self._session_factory is None:
            database = self.config['database']
            self._session_factory = create_session_factory(database['url'], echo=database.get('echo', False))
        return self._session_factory

    # ------------------------------------------------------------------
    # Command handlers: each returns (payload, exit code)
    # ------------------------------------------------------------------

    def _password_check(self, args):
        statuses = self.directory.check_password_status_and_notify(self.mailer)
        self.stats['accounts_checked'] = len(statuses)
        return [status.to_dict() for status in statuses], EXIT_OK

    def _password_status(self, args):
        status = self.directory.get_user_password_status(args.account)
        if status is None:
            return f"No user found with account or name '{args.account}'", EXIT_PARTIAL
        return format_password_status_text(status), EXIT_OK

    def _users_info(self, args):
        users = self.directory.get_users_info(args.accounts)
        missing = [account for account in args.accounts if account not in users]
        payload = {
            'users': {name: user.to_dict() for name, user in users.items()},
            'not_found': missing,
        }
        return payload, EXIT_PARTIAL if missing else EXIT_OK

    def _sync_history(self, args):
        snapshot = self.directory.fetch_history_snapshot()
        result = HistorySyncService(self.session_factory).sync(snapshot)
        self.stats.update({
            'users_processed': result.total_processed,
            'inserted': result.inserted,
            'changed': result.updated,
            'marked_inactive': result.inactivated,
            'skipped': result.skipped,
        })
        return result.to_dict(), EXIT_PARTIAL if result.skipped else EXIT_OK

    def _audit_report(self, args):
        rows = self.directory.generate_audit_report()
        path = args.output or audit_report_filename()
        with open(path, 'wb') as f:
            f.write(create_audit_workbook(rows))
        self.stats['audit_rows'] = len(rows)
        logger.info(f"Audit report written to {path}")
        return {'rows': len(rows), 'output': path}, EXIT_OK

    def _user_report(self, args):
        report = render_user_info_html(self.directory.get_all_users_with_password_status())
        if not args.output:
            return report, EXIT_OK
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(report)
        logger.info(f"User report written to {args.output}")
        return {'output': args.output}, EXIT_OK

    def _auth(self, args):
        password = getpass.getpass(f"Password for {args.username}: ")
        authenticated = self.directory.authenticate_user(args.username, password)
        return {'username': args.username, 'authenticated': authenticated}, EXIT_OK if authenticated else EXIT_PARTIAL

    def _auth_dn(self, args):
        password = getpass.getpass(f"Password for {args.dn}: ") if args.prompt_password else None
        result = self.directory.authenticate_direct(args.dn, password)
        return result.to_dict(), EXIT_OK if result.success else EXIT_PARTIAL

    def _create_user(self, args):
        new_user = NewAccount(
            sam_account_name=args.sam_account_name,
            surname=args.surname or '',
            given_name=args.given_name or '',
            department=args.department or '',
            title=args.title or '',
            description=args.description or '',
            street_address=args.employee_id or '',
        )
        result = self.directory.create_user(new_user, RoleRepository(self.session_factory))
        return result.to_dict(), EXIT_OK if result.success else EXIT_PARTIAL

    def _update_user(self, args):
        update = AccountUpdate(
            description=args.description,
            office=args.office,
            employee_id=args.employee_id,
            department=args.department,
            title=args.title,
        )
        result = self.directory.update_user(args.username, update)
        return result.to_dict(), EXIT_OK if result.success else EXIT_PARTIAL

    def _init_db(self, args):
        init_db(self.session_factory)
        return {'initialized': True}, EXIT_OK

    # ------------------------------------------------------------------
    # Output and notifications
    # ------------------------------------------------------------------

    @staticmethod
    def _emit(payload: Any):
        if isinstance(payload, str):
            print(payload)
        else:
            print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))

    def _notify(self, sender: Callable[..., bool], *args):
        """Send an operator alert; a failure to send is only logged."""
        if self.mailer is None:
            return
        try:
            sender(*args, self.mailer)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_success_notification(self, command: str):
        stats = {key: value for key, value in self.stats.items() if key not in ('start_time', 'end_time')}
        try:
            send_success_summary(command, stats, self.mailer)
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory bind, database and mail settings.

        Each check reports 'pass', 'fail' or 'skip' with a message. The
        overall status is 'unhealthy' as soon as one check fails; nothing
        past a configuration failure is attempted.
        """
        checks: Dict[str, Dict[str, str]] = {}
        report = {'status': 'healthy', 'timestamp': datetime.now().isoformat(), 'checks': checks}

        def record(name: str, status: str, message: str):
            checks[name] = {'status': status, 'message': message}
            if status == 'fail':
                report['status'] = 'unhealthy'

        try:
            self._load_configuration()
        except Exception as e:
            record('configuration', 'fail', f'Configuration error: {e}')
            return report
        record('configuration', 'pass', f'Loaded {self.config_path or "in-memory configuration"}')

        try:
            if not self.directory.health_check()['healthy']:
                raise DirectoryError("root DSE search failed")
            record('ldap', 'pass', f"Bound to {self.config['ldap'].get('server_url')}")
        except Exception as e:
            record('ldap', 'fail', f'LDAP connection failed: {e}')

        try:
            with session_scope(self.session_factory) as session:
                session.execute(text("SELECT 1"))
            record('database', 'pass', 'Database reachable')
        except Exception as e:
            record('database', 'fail', f'Database connection failed: {e}')

        mail = self.config.get('notifications', {})
        if not mail.get('enable_email', False):
            record('notifications', 'skip', 'Email notifications disabled')
        else:
            missing = [name for name in ('smtp_server', 'email_from') if not mail.get(name)]
            if missing:
                record('notifications', 'fail', f"Missing {', '.join(missing)}")
            else:
                record('notifications', 'pass', f"Mail goes out via {mail['smtp_server']}")

        return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ldap-lifecycle',
        description='Active Directory password expiry, user history and account audit tool'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('password-check', help='Check configured accounts and send expiry reminders')

    password_status = subparsers.add_parser('password-status', help='Show password status of one account')
    password_status.add_argument('account', help='Login name or common name')

    users_info = subparsers.add_parser('users-info', help='Look up several accounts')
    users_info.add_argument('accounts', nargs='+', help='Login names')

    subparsers.add_parser('sync-history', help='Record directory changes in the user history table')

    audit_report = subparsers.add_parser('audit-report', help='Write the account audit workbook')
    audit_report.add_argument('--output', '-o', help='Output .xlsx path')

    user_report = subparsers.add_parser('user-report', help='Render the user info HTML table')
    user_report.add_argument('--output', '-o', help='Output .html path (stdout if omitted)')

    auth = subparsers.add_parser('auth', help='Check a user password by login name')
    auth.add_argument('username')

    auth_dn = subparsers.add_parser('auth-dn', help='Bind directly with a distinguished name')
    auth_dn.add_argument('dn', nargs='?', help='Distinguished name (configured default if omitted)')
    auth_dn.add_argument('--prompt-password', action='store_true',
                         help='Prompt for the password instead of using the configured one')

    create_user = subparsers.add_parser('create-user', help='Create an account in its department OU')
    create_user.add_argument('--sam-account-name', required=True)
    create_user.add_argument('--surname')
    create_user.add_argument('--given-name')
    create_user.add_argument('--department')
    create_user.add_argument('--title')
    create_user.add_argument('--description')
    create_user.add_argument('--employee-id')

    update_user = subparsers.add_parser('update-user', help='Update attributes of an account')
    update_user.add_argument('username')
    update_user.add_argument('--description')
    update_user.add_argument('--office')
    update_user.add_argument('--employee-id')
    update_user.add_argument('--department')
    update_user.add_argument('--title')

    subparsers.add_parser('init-db', help='Create the database tables')
    subparsers.add_parser('health-check', help='Check configuration, directory and database')
    subparsers.add_parser('test-email', help='Send a test email to the operator list')

    return parser


def _test_email(orchestrator: Orchestrator) -> int:
    try:
        orchestrator._load_configuration()
    except ConfigurationError as e:
        print(f"Cannot send test email: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if not test_notification_config(orchestrator.mailer):
        print("Test email could not be delivered, see the log for details")
        return EXIT_PARTIAL
    print("Test email sent")
    return EXIT_OK


def main(argv=None):
    args = build_parser().parse_args(argv)
    orchestrator = Orchestrator(config_path=args.config)

    if args.command == 'health-check':
        health = orchestrator.health_check()
        print(json.dumps(health, indent=2))
        sys.exit(EXIT_OK if health['status'] == 'healthy' else EXIT_PARTIAL)
    if args.command == 'test-email':
        sys.exit(_test_email(orchestrator))
    sys.exit(orchestrator.run(args))


if __name__ == "__main__":
    main()
