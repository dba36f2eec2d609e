"""
Logging setup and configuration for directory sync.

This module provides centralized logging configuration: a rotating log file
with a retention period, optional console output, and a filter that keeps
bind passwords out of every log record.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

LOG_FILE_NAME = 'directory-sync.log'


SENSITIVE_KEYWORDS = [
    'password', 'bind_password', 'bind_secret', 'secret', 'credential',
    'passwd', 'pwd', 'userPassword', 'unicodePwd'
]


def _build_patterns():
    patterns = []
    for keyword in SENSITIVE_KEYWORDS:
        # key=value and key: value
        patterns.append((re.compile(rf'(\b{keyword}\s*[=:]\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
        # 'key': 'value' and "key": "value" in dict and JSON dumps
        patterns.append((re.compile(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE), r'\1****\2'))
    return patterns


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    _PATTERNS = _build_patterns()

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern, replacement in self._PATTERNS:
                msg = pattern.sub(replacement, msg)
            record.msg = msg

        return True


FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


def _level(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


class LoggingManager:
    """
    Owns the root logger configuration of a sync run.

    The `logging` section of the configuration selects the level, the
    directory of `directory-sync.log`, daily rotation, how many days of
    rotated files are kept and whether records are echoed to the console.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Install file and console handlers on the root logger.

        Only the first call takes effect until reset() is called.
        """
        if self.configured:
            return

        settings = config or {}
        level = _level(settings.get('level', 'INFO'), logging.INFO)
        self.log_dir = self._usable_directory(settings.get('log_dir', 'logs'))
        self.retention_days = settings.get('retention_days', 7)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        for handler in self._build_handlers(settings, level):
            handler.addFilter(SensitiveDataFilter())
            root_logger.addHandler(handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={settings.get('console_output', True)}"
        )

    def reset(self) -> None:
        """Forget the current configuration so setup_logging runs again."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            handler.close()
            root_logger.removeHandler(handler)
        self.configured = False

    @staticmethod
    def _usable_directory(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: Could not create log directory {log_dir}: {e}, logging to the current directory")
            return '.'
        return log_dir

    def _build_handlers(self, settings: Dict[str, Any], level: int) -> List[logging.Handler]:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(settings.get('rotation', 'daily')).lower() in ('daily', 'midnight'):
            file_handler = logging.handlers.TimedRotatingFileHandler(
                log_file, when='midnight', backupCount=self.retention_days, encoding='utf-8'
            )
            file_handler.suffix = '%Y-%m-%d'
        else:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handlers = [file_handler]

        if settings.get('console_output', True):
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(settings.get('console_level', 'WARNING'), logging.WARNING))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console_handler)

        return handlers

    def _cleanup_old_logs(self) -> None:
        """Delete rotated files older than retention_days; the active file is kept."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for path in self.get_log_files():
            if path.endswith(LOG_FILE_NAME):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                    os.remove(path)
                    print(f"Removed old log file: {path}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {path}: {e}")

    def get_log_files(self) -> List[str]:
        """The active log file and its rotated copies."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))

    def get_log_stats(self) -> Dict[str, Any]:
        files = self.get_log_files()
        size = sum(os.path.getsize(f) for f in files if os.path.exists(f))
        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(files),
            'total_size_bytes': size,
        }


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure logging once per process from the `logging` section."""
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    return _logging_manager.get_log_stats()


class SecurityAuditLogger:
    """Special logger for security-related events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_bind_attempt(self, domain: str, bind_user: Optional[str], success: bool):
        """Log directory bind attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Bind {status}: domain={domain} user={bind_user or 'anonymous'}")

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")

    def log_security_event(self, event: str, details: str = ""):
        """Log general security events."""
        message = f"Security event: {event}"
        if details:
            message += f" - {details}"
        self.logger.warning(message)


# Global security logger instance
security_logger = SecurityAuditLogger()
