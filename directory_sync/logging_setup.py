"""
Logging setup for directory-sync.

Configures file logging with rotation and retention, optional console
output, and scrubbing of credentials before anything reaches a handler.
The 'security' logger receives an audit trail of binds and entry writes.
"""

import glob
import logging
import logging.handlers
import os
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

LOG_FILE_NAME = 'directory_sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'trust_store_password', 'unicodepwd',
        'userpassword', 'secret', 'credential', 'pwd', 'token',
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        keywords = '|'.join(re.escape(k) for k in self.SENSITIVE_KEYWORDS)
        # key=value and key: value
        self._assignment = re.compile(rf'(\b\w*(?:{keywords})\w*\s*[=:]\s*)(?!\*\*\*\*)[^\s,}}\]\)]+',
                                      re.IGNORECASE)
        # "key": "value" (JSON and dict reprs)
        self._quoted = re.compile(rf'(["\']\w*(?:{keywords})\w*["\']\s*:\s*)(["\'])[^"\']*\2',
                                  re.IGNORECASE)

    def scrub(self, text: str) -> str:
        text = self._quoted.sub(r'\1\2****\2', text)
        return self._assignment.sub(r'\1****', text)

    def filter(self, record):
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for directory-sync.

    Provides file logging with rotation and retention, and console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: The 'logging' configuration section
        """
        if self.configured:
            return

        logging_config = config or {}
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

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s', datefmt='%H:%M:%S'
            ))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    def reset(self) -> None:
        """Detach the handlers installed by setup_logging()."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
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
        Create the file handler for a rotation setting.

        Args:
            rotation: 'daily', 'midnight' or 'none'

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        return logging.FileHandler(log_file, encoding='utf-8')

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: The 'logging' configuration section
    """
    _logging_manager.setup_logging(config)


def cleanup_logs() -> None:
    """Force cleanup of old log files."""
    _logging_manager._cleanup_old_logs()


class SecurityAuditLogger:
    """Audit trail for binds and directory writes."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_authentication_attempt(self, url: str, bind_dn: Optional[str], success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Bind {status}: {url} dn={bind_dn or '<anonymous>'}")

    def log_entry_operation(self, operation: str, dn: str, success: bool, details: str = ""):
        """Log a write against a directory entry."""
        status = "SUCCESS" if success else "FAILURE"
        message = f"Entry operation {status}: {operation} dn={dn}"
        if details:
            message += f" ({details})"
        if success:
            self.logger.info(message)
        else:
            self.logger.warning(message)

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


security_logger = SecurityAuditLogger()
