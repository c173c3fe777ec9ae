"""
Logging setup for LDAP Lifecycle.

Everything goes to ``app.log`` in the configured log directory, warnings and
above also reach the console, and history sync summaries are additionally
written to their own file so that reconciliation runs can be reviewed
without the rest of the noise. Password-like values are masked before any
handler writes them.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta

HISTORY_LOGGER_NAME = 'ldap_lifecycle.history'

FILE_FORMAT = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                                datefmt='%Y-%m-%d %H:%M:%S')
CONSOLE_FORMAT = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%H:%M:%S')


def _masking_patterns(keywords):
    value_end = r'[^\s,}\]]+(\s|,|$)'
    for keyword in keywords:
        yield re.compile(rf'({keyword}\s*=\s*){value_end}', re.IGNORECASE)
        yield re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE)
        yield re.compile(rf"('{keyword}'\s*:\s*')[^']*(')", re.IGNORECASE)
    yield re.compile(rf'(Authorization:\s*(?:Bearer|Basic)\s+){value_end}', re.IGNORECASE)


class SensitiveDataFilter(logging.Filter):
    """Masks bind, SMTP and initial passwords in log messages."""

    KEYWORDS = ('password', 'bind_password', 'smtp_password', 'default_password',
                'token', 'secret', 'credential', 'pwd')
    PATTERNS = tuple(_masking_patterns(KEYWORDS))

    def filter(self, record):
        message = str(record.msg)
        for pattern in self.PATTERNS:
            message = pattern.sub(r'\1****\2', message)
        record.msg = message
        return True


def _level(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


class LoggingManager:
    """Builds the handler set once per process from the logging section."""

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
        self._filter = SensitiveDataFilter()

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        if self.configured:
            return

        settings = config or {}
        level = _level(settings.get('level', 'INFO'), logging.INFO)
        rotation = settings.get('rotation', 'daily')
        self.log_dir = self._prepare_directory(settings.get('log_dir', 'logs'))
        self.retention_days = settings.get('retention_days', 7)

        root = logging.getLogger()
        root.setLevel(level)
        root.handlers.clear()
        root.addHandler(self._decorate(self._create_file_handler('app.log', rotation), level, FILE_FORMAT))

        if settings.get('console_output', True):
            console_level = _level(settings.get('console_level', 'WARNING'), logging.WARNING)
            root.addHandler(self._decorate(logging.StreamHandler(), console_level, CONSOLE_FORMAT))

        history_file = settings.get('history_log_file', 'history.log')
        if history_file:
            history = logging.getLogger(HISTORY_LOGGER_NAME)
            history.handlers.clear()
            history.addHandler(self._decorate(self._create_file_handler(history_file, rotation),
                                              logging.INFO, FILE_FORMAT))

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, history_log={history_file or 'disabled'}"
        )

    def _decorate(self, handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(self._filter)
        return handler

    @staticmethod
    def _prepare_directory(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            # Logging is not up yet, so this can only go to stderr
            print(f"Warning: cannot create log directory {log_dir} ({e}), logging to current directory")
            return '.'
        return log_dir

    def _create_file_handler(self, filename: str, rotation: str) -> logging.Handler:
        """
        Create a handler for ``filename`` inside the log directory.

        ``daily`` and ``midnight`` rotate at midnight and keep retention_days
        backups; anything else writes to a single file.
        """
        path = os.path.join(self.log_dir or '.', filename)
        if str(rotation).lower() not in ('daily', 'midnight'):
            return logging.FileHandler(path, encoding='utf-8')

        handler = logging.handlers.TimedRotatingFileHandler(
            path, when='midnight', backupCount=self.retention_days, encoding='utf-8'
        )
        handler.suffix = '%Y-%m-%d'
        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated files whose modification time is past the retention window."""
        if self.retention_days <= 0:
            return

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        rotated = [path for path in self.get_log_files() if not path.endswith('.log')]
        for path in rotated:
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {path}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, '*.log*')))

    def get_log_stats(self) -> Dict[str, Any]:
        files = self.get_log_files()
        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(files),
            'total_size_bytes': sum(os.path.getsize(path) for path in files if os.path.exists(path)),
        }


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure process-wide logging from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


def get_history_logger() -> logging.Logger:
    """Logger that records history sync runs in the dedicated history log."""
    return logging.getLogger(HISTORY_LOGGER_NAME)


class SecurityAuditLogger:
    """Audit trail for binds and directory writes, on the ``security`` logger."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    @staticmethod
    def _outcome(success: bool) -> str:
        return "SUCCESS" if success else "FAILURE"

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        self.logger.info(f"Authentication {self._outcome(success)}: {system} user={username}")

    def log_directory_write(self, operation: str, target: str, success: bool):
        self.logger.info(f"Directory write {self._outcome(success)}: {operation} target={target}")


security_logger = SecurityAuditLogger()
