"""
Logging setup and configuration for AD Roster Sync.

Provides a rotating file log with a retention policy, optional console output,
scrubbing of passwords and other secrets, and an audit logger that records
every account mutation.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

LOG_FILE_NAME = 'app.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'unicodePwd', 'token',
        'secret', 'credential', 'pwd'
    ]

    _PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value and key: value
        _PATTERNS.append((re.compile(rf'(\b{_keyword}\s*[=:]\s*)(?!\*\*\*\*)[^\s,}}\]"\']+', re.IGNORECASE), r'\1****'))
        # "key": "value" and 'key': 'value'
        _PATTERNS.append((re.compile(rf'(["\']{_keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE), r'\1****\2'))
    del _keyword

    def filter(self, record):
        """Scrub sensitive values from the message and its arguments."""
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass

        msg = str(record.msg)
        for pattern, replacement in self._PATTERNS:
            msg = pattern.sub(replacement, msg)
        record.msg = msg
        return True


class LoggingManager:
    """
    Manages logging configuration for the application.

    Provides file-based logging with rotation and retention, plus console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def reset(self) -> None:
        """Allow setup_logging to run again (used between test runs)."""
        self.configured = False

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the rotation setting.

        Args:
            rotation: 'daily' / 'midnight' for daily rotation, anything else for a plain file
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if str(rotation).lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')):
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Records directory mutations for the audit trail."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_account_operation(self, operation: str, unique_id: str, account_name: str,
                              success: bool, details: str = ''):
        status = "SUCCESS" if success else "FAILURE"
        message = f"Account {operation} {status}: id={unique_id} account={account_name}"
        if details:
            message += f" - {details}"
        if success:
            self.logger.info(message)
        else:
            self.logger.warning(message)

    def log_ou_creation(self, name: str, dn: str = ''):
        self.logger.info(f"Organizational unit created: {name} {dn}".rstrip())


audit_logger = AuditLogger()
