"""
Email notification utilities for LDAP Lifecycle.

This module selects which password statuses need a reminder, resolves the
address each reminder goes to, and delivers HTML mail over SMTP. It also
sends operator alerts and run summaries for scheduled jobs.
"""

import html
import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from typing import Dict, List, Any, Iterable, Mapping, Optional, Tuple
from datetime import datetime

from ldap_lifecycle.models import Notification, PasswordStatus, format_timestamp
from ldap_lifecycle.retry import RetryPolicy, MaxRetriesExceeded

logger = logging.getLogger(__name__)

SOURCE_MAPPING = 'mapping'
SOURCE_MAIL = 'mail'
SOURCE_UPN = 'userPrincipalName'


class NotificationError(Exception):
    """Exception raised when notification sending fails."""
    pass


def resolve_address(status: PasswordStatus, mail_mapping: Mapping[str, str]) -> Tuple[str, str]:
    """
    Resolve where a reminder for this account should go.

    Order: override mapping (case-insensitive on the login), then the mail
    attribute, then userPrincipalName.

    Returns:
        (address, source), or ('', '') when nothing usable is found
    """
    user = status.user
    lowered = {str(key).lower(): value for key, value in (mail_mapping or {}).items()}
    mapped = lowered.get(user.sam_account_name.lower())
    if mapped:
        return mapped, SOURCE_MAPPING
    if user.email:
        return user.email, SOURCE_MAIL
    if user.user_principal_name:
        return user.user_principal_name, SOURCE_UPN
    return '', ''


def select_notifications(statuses: Iterable[PasswordStatus], threshold_days: int,
                         mail_mapping: Mapping[str, str]) -> Tuple[List[Notification], List[str]]:
    """
    Pick the statuses that are due a reminder and resolve their addresses.

    A status qualifies when days_until_expiration is set and is at most
    threshold_days. Accounts with no resolvable address are skipped with a
    warning.

    Returns:
        (notifications, unresolved account names)
    """
    notifications = []
    unresolved = []

    for status in statuses:
        days = status.days_until_expiration
        if days is None or days > threshold_days:
            continue

        address, source = resolve_address(status, mail_mapping)
        if not address:
            logger.warning(f"Password for {status.user.sam_account_name} expires in {days} days "
                           f"but no notification address could be resolved")
            unresolved.append(status.user.sam_account_name)
            continue

        notifications.append(Notification(status=status, address=address, source=source))

    logger.debug(f"Selected {len(notifications)} notifications, {len(unresolved)} unresolved")
    return notifications, unresolved


def build_expiry_message(notification: Notification) -> Tuple[str, str]:
    """Build the subject and HTML body of a password expiry reminder."""
    status = notification.status
    days = status.days_until_expiration
    escape = html.escape

    subject = f"Your domain account password expires in {days} days, please change it"

    body = (
        f"<p><span style='color: red;'>Your domain account password expires in {days} days. "
        f"Please change it.</span><br>"
        f"If it is not changed in time, <ins>computer sign-in</ins>, <ins>mailbox sign-in</ins> "
        f"and <ins>remote access</ins> will stop working.<br>"
        f"Details:</p>"
        f"<ul>"
        f"<li>Account: {escape(status.user.sam_account_name)}</li>"
        f"<li>Email: {escape(notification.address)}</li>"
        f"<li>Maximum password age: {status.max_age_days} days</li>"
        f"<li>Password last set: {format_timestamp(status.last_set)}</li>"
        f"<li>Password expires: {format_timestamp(status.expires_on)}</li>"
        f"<li>Days until expiration: {days}</li>"
        f"<li>Password never expires: {status.never_expires}</li>"
        f"</ul>"
    )
    return subject, body


class Mailer:
    """SMTP mail dispatch configured from the notifications section."""

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.retry_policy = RetryPolicy.from_config(error_config)

    @property
    def enabled(self) -> bool:
        return bool(self.config.get('enable_email', True))

    def send(self, subject: str, html_body: str, to: str) -> None:
        """
        Send one HTML message to a single recipient.

        Raises:
            NotificationError: If the message could not be delivered
        """
        self._deliver(subject, html_body, [to], subtype='html')

    def send_to_operators(self, subject: str, body: str) -> bool:
        """Send a plain-text message to email_to. Delivery problems are logged, not raised."""
        if not self.enabled:
            logger.debug(f"Email disabled, not sending '{subject}'")
            return False

        operators = self.config.get('email_to') or []
        if isinstance(operators, str):
            operators = [operators]
        if not operators:
            logger.error(f"No operator addresses in email_to, cannot send '{subject}'")
            return False

        try:
            self._deliver(subject, body, operators, subtype='plain')
        except NotificationError as e:
            logger.error(str(e))
            return False
        return True

    def _deliver(self, subject: str, body: str, recipients: List[str], subtype: str) -> None:
        smtp_server = self.config.get('smtp_server')
        if not smtp_server:
            raise NotificationError("SMTP server not configured")
        if not recipients or not all(recipients):
            raise NotificationError("No recipient address given")

        smtp_username = self.config.get('smtp_username')
        email_from = self.config.get('email_from', smtp_username)
        sender_name = self.config.get('sender_name')
        email_cc = self.config.get('email_cc')

        msg = MIMEMultipart()
        msg['From'] = formataddr((sender_name, email_from)) if sender_name else email_from
        msg['To'] = ', '.join(recipients)
        if email_cc:
            msg['Cc'] = email_cc
        msg['Subject'] = subject
        msg.attach(MIMEText(body, subtype, 'utf-8'))

        all_recipients = list(recipients) + ([email_cc] if email_cc else [])

        try:
            self.retry_policy.call(
                self._smtp_send, email_from, all_recipients, msg.as_string(),
                retry_on=(smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, ConnectionError, TimeoutError),
                operation="SMTP delivery"
            )
        except MaxRetriesExceeded as e:
            raise NotificationError(f"Failed to send '{subject}' to {', '.join(recipients)}: {e.last_exception}")
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send '{subject}' to {', '.join(recipients)}: {e}")

        logger.info(f"Email sent to {', '.join(recipients)}: {subject}")

    def _smtp_send(self, email_from: str, recipients: List[str], message: str) -> None:
        smtp_server = self.config.get('smtp_server')
        smtp_port = self.config.get('smtp_port', 587)
        smtp_username = self.config.get('smtp_username')
        smtp_password = self.config.get('smtp_password')
        smtp_tls = self.config.get('smtp_tls', True)

        logger.debug(f"Sending email to {len(recipients)} recipients via {smtp_server}:{smtp_port}")

        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, recipients, message)
        finally:
            try:
                server.quit()
            except smtplib.SMTPException:
                pass


def send_password_expiry_notices(notifications: Iterable[Notification], mailer: Mailer) -> Dict[str, int]:
    """
    Send every selected reminder. A failed recipient is logged and skipped.

    Returns:
        Dictionary with 'sent' and 'failed' counts
    """
    counts = {'sent': 0, 'failed': 0}
    for notification in notifications:
        subject, body = build_expiry_message(notification)
        try:
            mailer.send(subject, body, notification.address)
            counts['sent'] += 1
        except NotificationError as e:
            logger.error(f"Expiry reminder for {notification.status.user.sam_account_name} failed: {e}")
            counts['failed'] += 1
    return counts


def _operator_report(heading: str, lines: List[str], sections: Optional[Dict[str, Mapping[str, Any]]] = None) -> str:
    """Plain-text body shared by operator alerts, run summaries and the test mail."""
    body = [f"LDAP Lifecycle {heading}", f"Timestamp: {datetime.now():%Y-%m-%d %H:%M:%S}", ""]
    body.extend(lines)
    for title, values in (sections or {}).items():
        body.extend(["", f"{title}:"])
        body.extend(f"  {key}: {value}" for key, value in values.items())
    body.extend(["", "This is an automated message from LDAP Lifecycle."])
    return '\n'.join(body)


def _format_runtime(seconds: float) -> str:
    if seconds <= 60:
        return f"{seconds:.2f} seconds"
    minutes, rest = divmod(seconds, 60)
    return f"{int(minutes)}m {rest:.1f}s"


def send_failure_notification(title: str, error_message: str, mailer: Mailer,
                              additional_info: Optional[Dict[str, Any]] = None) -> bool:
    """
    Alert the operators that a command failed.

    Returns:
        True if the alert was delivered, False if disabled or undeliverable
    """
    if not mailer.config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    lines = [f"Failure Type: {title}", f"Error Message: {error_message}", "",
             "Check the application logs for details."]
    sections = {'Additional Information': additional_info} if additional_info else None
    return mailer.send_to_operators(f"LDAP Lifecycle Alert: {title}",
                                    _operator_report("Failure Report", lines, sections))


def send_directory_connection_failure(error_message: str, command: str, mailer: Mailer) -> bool:
    """Alert the operators that the service account could not reach or bind to the directory."""
    return send_failure_notification("LDAP Connection Failed", error_message, mailer, {
        'Component': 'LDAP Connection',
        'Command': command,
        'Impact': 'Operation aborted before any change was written',
    })


def send_success_summary(command: str, stats: Dict[str, Any], mailer: Mailer) -> bool:
    """Report the counters of a successful scheduled run, when email_on_success is set."""
    if not mailer.config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    counters = {'Total runtime': _format_runtime(stats.get('runtime_seconds', 0))}
    counters.update((key.replace('_', ' ').capitalize(), value)
                    for key, value in stats.items() if key != 'runtime_seconds')
    return mailer.send_to_operators(f"LDAP Lifecycle: {command} completed",
                                    _operator_report("Summary Report", [f"{command} completed successfully."],
                                                     {'Statistics': counters}))


def test_notification_config(mailer: Mailer) -> bool:
    """Send a test message to the operator list and report whether it went out."""
    config = mailer.config
    recipients = config.get('email_to') or []
    settings = {
        'SMTP Server': config.get('smtp_server', 'not configured'),
        'SMTP Port': config.get('smtp_port', 'not configured'),
        'From Address': config.get('email_from', 'not configured'),
        'Recipients': recipients if isinstance(recipients, str) else ', '.join(recipients),
    }
    body = _operator_report("Configuration Test",
                            ["If you receive this message, email notifications are configured correctly."],
                            {'Settings': settings})

    delivered = mailer.send_to_operators("LDAP Lifecycle: Configuration Test", body)
    if delivered:
        logger.info(f"Test notification sent via {settings['SMTP Server']}")
    else:
        logger.error(f"Test notification via {settings['SMTP Server']} failed")
    return delivered
