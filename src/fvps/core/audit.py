"""Audit logging for provisioning runs.

Provides:
- JSON-lines audit log on the operator's machine
- Run and stage outcome events with a shared run id
- Sensitive data redaction
- Automatic log rotation
"""

import fcntl
import getpass
import json
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional

from fvps.core.output import console


DEFAULT_LOG_PATH = Path("~/.fvps/audit.log").expanduser()
DEFAULT_MAX_SIZE_MB = 10
DEFAULT_BACKUP_COUNT = 5


class AuditEventType(Enum):
    """Types of auditable events."""
    RUN_START = "run.start"
    RUN_END = "run.end"

    STAGE_SKIPPED = "stage.skipped"
    STAGE_VERIFIED = "stage.verified"
    STAGE_FAILED = "stage.failed"


class AuditResult(Enum):
    """Result of an audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


# Keys that contain sensitive data
SENSITIVE_KEYS = frozenset({
    "password", "secret", "token", "credential", "passwd",
})


def _sanitize_value(key: str, value: Any) -> Any:
    """Redact values whose key suggests sensitive data."""
    key_lower = key.lower()

    if any(s in key_lower for s in SENSITIVE_KEYS):
        return "***REDACTED***"

    if isinstance(value, dict):
        return {k: _sanitize_value(k, v) for k, v in value.items()}

    if isinstance(value, list):
        return [_sanitize_value(key, v) for v in value]

    return value


@dataclass
class AuditEvent:
    """Represents a single audit event."""
    event_type: AuditEventType
    result: AuditResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    actor: str = field(default_factory=getpass.getuser)

    target: Optional[str] = None
    stage: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)

    message: Optional[str] = None
    error: Optional[str] = None

    run_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type.value,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "target": self.target,
            "stage": self.stage,
            "parameters": {k: _sanitize_value(k, v) for k, v in self.parameters.items()},
            "message": self.message,
            "error": self.error,
            "run_id": self.run_id,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Append-only audit log.

    Write failures never interrupt a run; they are reported at debug
    level only.
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled
        self.run_id = str(uuid.uuid4())

    def _ensure_log_directory(self) -> bool:
        try:
            self.log_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            if not self.log_path.exists():
                self.log_path.touch(mode=0o600)
            return True
        except OSError as e:
            console.debug(f"Cannot create audit log directory: {e}")
            return False

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        if not self.enabled:
            return

        event.run_id = self.run_id
        log_line = event.to_json() + "\n"

        if not self._ensure_log_directory():
            return

        try:
            with self._locked_append() as f:
                f.write(log_line)
        except OSError as e:
            console.debug(f"Failed to write audit log: {e}")
            return

        self._rotate_if_needed()

    @contextmanager
    def _locked_append(self) -> Generator:
        """Append to the log while holding an exclusive lock."""
        with open(self.log_path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield f
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _rotate_if_needed(self) -> None:
        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate_logs()
        except OSError as e:
            console.debug(f"Audit log rotation failed: {e}")

    def _rotate_logs(self) -> None:
        oldest = self.log_path.with_suffix(f".{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_suffix(f".{i}")
            dst = self.log_path.with_suffix(f".{i + 1}")
            if src.exists():
                src.rename(dst)

        self.log_path.rename(self.log_path.with_suffix(".1"))
        self.log_path.touch(mode=0o600)

    # Convenience methods
    def log_run_start(self, group: str, target: str) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.RUN_START,
            result=AuditResult.SUCCESS,
            target=target,
            parameters={"group": group},
        ))

    def log_run_end(
        self,
        group: str,
        target: str,
        success: bool,
        failed_stage: Optional[str] = None,
    ) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.RUN_END,
            result=AuditResult.SUCCESS if success else AuditResult.FAILURE,
            target=target,
            stage=failed_stage,
            parameters={"group": group},
        ))

    def log_stage(
        self,
        event_type: AuditEventType,
        stage: str,
        target: str,
        *,
        critical: bool = True,
        error: Optional[str] = None,
    ) -> None:
        """Log a stage outcome."""
        if event_type is AuditEventType.STAGE_FAILED:
            result = AuditResult.FAILURE if critical else AuditResult.WARNING
        else:
            result = AuditResult.SUCCESS
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            target=target,
            stage=stage,
            parameters={"critical": critical},
            error=error,
        ))


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
