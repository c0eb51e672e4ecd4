"""
Logging setup and configuration for LDAP Bulk Import.

This module provides centralized logging configuration: a rotating log file
with retention, optional console output, scrubbing of credentials from log
messages, and an audit logger that records every directory change the
executor applies or refuses.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

LOG_FILE_NAME = 'import.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'unicodePwd', 'userPassword',
        'token', 'secret', 'credential', 'pwd', 'authorization', 'api_key',
        'client_secret', 'access_token'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self.patterns = _build_patterns(self.SENSITIVE_KEYWORDS)

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass

        msg = str(record.msg)
        for pattern, replacement in self.patterns:
            msg = pattern.sub(replacement, msg)
        record.msg = msg
        return True


def _build_patterns(keywords: List[str]):
    # Authorization headers first, so the scheme name is not mistaken for the secret
    patterns = [(re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)\S+', re.IGNORECASE), r'\1****')]
    for keyword in keywords:
        # 'key': 'value' and "key": "value" as printed by dict reprs and JSON
        patterns.append((re.compile(rf'([\'"]{keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE),
                         r'\1****\2'))
        # key=value and key: value
        patterns.append((re.compile(rf'({keyword}\s*[=:]\s*)(?!\*\*\*\*)(?!(?:Bearer|Basic)\s)[^\s,}}\]\'"]+',
                                    re.IGNORECASE), r'\1****'))
    return patterns


class LoggingManager:
    """
    Manages logging configuration for the import engine.

    Provides file-based logging with rotation, retention policies, and
    console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(threadName)s %(name)s:%(lineno)d - %(message)s',
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

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
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
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except (OSError, ValueError) as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        """
        Get list of current log files.

        Returns:
            List of log file paths
        """
        if not self.log_dir:
            return []

        log_pattern = os.path.join(self.log_dir, LOG_FILE_NAME + '*')
        return sorted(glob.glob(log_pattern))

    def reset(self) -> None:
        """Forget the current configuration so ``setup_logging`` applies again."""
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class ImportAuditLogger:
    """Audit trail of directory changes applied by the executor."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_action(self, action_type: str, object_key: str, target: str, success: bool, message: str = ''):
        """Log the outcome of one executed action."""
        status = "SUCCESS" if success else "FAILURE"
        line = f"Action {status}: {action_type} object={object_key} target={target}"
        if message:
            line += f" - {message}"
        if success:
            self.logger.info(line)
        else:
            self.logger.warning(line)

    def log_deletion_refused(self, object_key: str, reason: str):
        """Log a deletion the executor refused to perform."""
        self.logger.warning(f"Deletion refused: object={object_key} - {reason}")

    def log_run(self, session_id: str, summary: Dict[str, Any]):
        """Log the final outcome of an import run."""
        self.logger.info(f"Import run {session_id} finished: {summary}")

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")


# Global audit logger instance
audit_logger = ImportAuditLogger()
