"""
Logging setup and configuration for Identity Sync.

This module configures the process-level handlers (a rotated sync.log and
optional console output, both scrubbed of credentials) and provides the
logger that is scoped to one sync invocation and passed explicitly through
the membership components.
"""

import os
import re
import glob
import time
import uuid
import logging
import logging.handlers
from typing import Any, Dict, List, Optional

LOG_FILE_NAME = 'sync.log'


class SensitiveDataFilter(logging.Filter):
    """Masks credential values in log messages."""

    SENSITIVE_KEYWORDS = (
        'password', 'bind_password', 'keystore_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'api_key'
    )

    _keywords = '|'.join(SENSITIVE_KEYWORDS)
    # key=value
    _ASSIGNMENT = re.compile(rf'\b((?:{_keywords})\s*=\s*)[^\s,}}\]]+', re.IGNORECASE)
    # "key": "value" and 'key': 'value' as printed for dicts
    _QUOTED = re.compile(rf'''(["'](?:{_keywords})["']\s*:\s*["'])[^"']*(["'])''', re.IGNORECASE)

    def filter(self, record):
        msg = str(record.msg)
        msg = self._ASSIGNMENT.sub(r'\1****', msg)
        record.msg = self._QUOTED.sub(r'\1****\2', msg)
        return True


class SyncLogger(logging.LoggerAdapter):
    """
    Logger scoped to a single sync invocation.

    Every message is prefixed with the run id and the identity being synced,
    and both values are attached to the record as ``sync_run`` and ``sync_identity``.
    """

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return f"[{self.extra['sync_run']}:{self.extra['sync_identity']}] {msg}", kwargs


def create_sync_logger(name: str, identity_id: str, run_id: Optional[str] = None) -> SyncLogger:
    """
    Create a logger for one sync invocation.

    Args:
        name: Underlying logger name (typically __name__)
        identity_id: Id of the identity being synced
        run_id: Correlation id, generated when not given

    Returns:
        SyncLogger bound to the invocation
    """
    run_id = run_id or uuid.uuid4().hex[:8]
    return SyncLogger(logging.getLogger(name), {'sync_run': run_id, 'sync_identity': identity_id})


class LoggingManager:
    """
    Owns the root logger configuration of the sync job.

    Configuration keys: ``level``, ``log_dir``, ``rotation`` ('daily' or
    'none'), ``retention_days``, ``console_output`` and ``console_level``.
    """

    FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
    CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Install the file and console handlers on the root logger, once per process.

        Args:
            config: The ``logging`` configuration section
        """
        if self.configured:
            return
        config = config or {}

        self.log_dir = self._usable_log_dir(config.get('log_dir', 'logs'))
        self.retention_days = config.get('retention_days', 7)
        level = _level(config.get('level'), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        for handler in self._handlers(config, level):
            handler.addFilter(SensitiveDataFilter())
            root_logger.addHandler(handler)

        removed = self.prune_old_logs()
        self.configured = True
        logging.getLogger(__name__).info(
            f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at {logging.getLevelName(level)}, "
            f"keeping {self.retention_days} days ({len(removed)} old files removed)")

    def _handlers(self, config: Dict[str, Any], level: int) -> List[logging.Handler]:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(config.get('rotation', 'daily')).lower() in ('daily', 'midnight'):
            file_handler = logging.handlers.TimedRotatingFileHandler(
                log_file, when='midnight', backupCount=self.retention_days, encoding='utf-8')
            file_handler.suffix = '%Y-%m-%d'
        else:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(self.FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handlers = [file_handler]

        if config.get('console_output', True):
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(config.get('console_level'), logging.WARNING))
            console_handler.setFormatter(logging.Formatter(self.CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console_handler)
        return handlers

    @staticmethod
    def _usable_log_dir(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: cannot create log directory {log_dir} ({e}), logging to the working directory")
            return '.'
        return log_dir

    def prune_old_logs(self) -> List[str]:
        """
        Delete rotated log files older than the retention period.

        Returns:
            Paths of the removed files
        """
        if not self.log_dir or self.retention_days <= 0:
            return []

        cutoff = time.time() - self.retention_days * 86400
        removed = []
        for path in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    removed.append(path)
            except OSError as e:
                print(f"Warning: could not remove old log file {path}: {e}")
        return removed


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class StoreAuditLogger:
    """Audit trail of the changes the sync engine makes to the local store."""

    def __init__(self):
        self.logger = logging.getLogger('identity_sync.audit')

    def log_group_created(self, group_id: str, ref: Any):
        self.logger.info(f"Group created: id={group_id} ref={ref}")

    def log_group_removed(self, group_id: str, success: bool):
        outcome = "removed" if success else "removal FAILED"
        self.logger.info(f"Orphaned group {outcome}: id={group_id}")

    def log_membership_removed(self, member_id: str, group_id: str):
        self.logger.info(f"Membership removed: member={member_id} group={group_id}")

    def log_conversion(self, record_id: str, principal_count: int):
        self.logger.info(f"Converted to dynamic membership: id={record_id} principals={principal_count}")


# Global audit logger instance
audit_logger = StoreAuditLogger()
