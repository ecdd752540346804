from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, List, Optional, TypeVar

from rollt.logging import get_logger, log_security_event, sanitize_error_message
from rollt.storage.common import SecurityStore
from rollt.storage.models import utcnow

logger = get_logger(__name__)

T = TypeVar("T")

# Audit action vocabulary
PASSWORD_CHANGED = "PASSWORD_CHANGED"
TWO_FACTOR_ENABLED = "2FA_ENABLED"
TWO_FACTOR_DISABLED = "2FA_DISABLED"
TWO_FACTOR_VERIFICATION_FAILED = "2FA_VERIFICATION_FAILED"
LOGOUT_ALL_DEVICES = "LOGOUT_ALL_DEVICES"
SESSION_REVOKED = "SESSION_REVOKED"
BACKUP_CODE_USED = "BACKUP_CODE_USED"

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"


@dataclass
class WriteFailure:
    operation: str
    error_type: str
    error: str
    occurred_at: datetime = field(default_factory=utcnow)


class NonCriticalWriter:
    """Runs secondary writes whose failure must never fail the primary request.

    Failures are logged and kept in a bounded in-process sink for diagnostics.
    """

    def __init__(self, max_failures: int = 200) -> None:
        self._failures: Deque[WriteFailure] = deque(maxlen=max_failures)
        self._lock = threading.Lock()

    def _record(self, operation: str, exc: Exception, log_fields: dict[str, Any]) -> None:
        failure = WriteFailure(
            operation=operation,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        with self._lock:
            self._failures.append(failure)
        logger.warning(
            "non_critical_write_failed",
            operation=operation,
            error_type=failure.error_type,
            error=failure.error,
            **log_fields,
        )

    def run(self, operation: str, fn: Callable[[], T], **log_fields: Any) -> Optional[T]:
        try:
            return fn()
        except Exception as exc:
            self._record(operation, exc, log_fields)
            return None

    async def run_async(
        self, operation: str, fn: Callable[[], Awaitable[T]], **log_fields: Any
    ) -> Optional[T]:
        try:
            return await fn()
        except Exception as exc:
            self._record(operation, exc, log_fields)
            return None

    @property
    def failures(self) -> List[WriteFailure]:
        with self._lock:
            return list(self._failures)

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()


class AuditTrail:
    """Appends security audit rows through a ``NonCriticalWriter``."""

    def __init__(self, store: SecurityStore, writer: NonCriticalWriter) -> None:
        self.store = store
        self.writer = writer

    def record(
        self,
        user_id: str,
        action: str,
        status: str = STATUS_SUCCESS,
        *,
        ip_address: Optional[str] = None,
        browser_info: Optional[str] = None,
    ) -> None:
        log_security_event(action, user_id=user_id, status=status, ip_address=ip_address)
        self.writer.run(
            "audit_log",
            lambda: self.store.append_audit_log(
                user_id,
                action,
                status,
                ip_address=ip_address,
                browser_info=browser_info,
            ),
            action=action,
            user_id=user_id,
        )

    def record_password_change(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        browser_info: Optional[str] = None,
    ) -> None:
        self.writer.run(
            "password_change_log",
            lambda: self.store.append_password_change_log(
                user_id, ip_address=ip_address, browser_info=browser_info
            ),
            user_id=user_id,
        )
