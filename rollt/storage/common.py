from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from rollt.logging import get_logger
from rollt.storage.models import (
    AuditLogEntry,
    BackupCode,
    PasswordChangeLogEntry,
    Session,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorPending,
    TwoFactorState,
    User,
)

logger = get_logger(__name__)

TWO_FACTOR_DISABLED = "disabled"
TWO_FACTOR_PENDING = "pending"
TWO_FACTOR_ENABLED = "enabled"


class SecurityStore(Protocol):
    """Persistence surface shared by ``MemoryStore`` and ``PostgresStore``."""

    # users / credentials
    def create_user(self, username: str, email: str, *, avatar: Optional[str] = None) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    # two-factor
    def get_two_factor_state(self, user_id: str) -> TwoFactorState: ...

    def set_two_factor_pending(self, user_id: str, secret: str) -> TwoFactorPending: ...

    def enable_two_factor(self, user_id: str, last_used_step: Optional[int] = None) -> TwoFactorEnabled: ...

    def record_totp_step(self, user_id: str, step: int) -> None: ...

    def disable_two_factor(self, user_id: str) -> None: ...

    def add_backup_code(self, user_id: str, code_hash: str) -> BackupCode: ...

    def list_backup_codes(self, user_id: str, *, unused_only: bool = False) -> list[BackupCode]: ...

    def consume_backup_code(self, code_id: str) -> bool: ...

    def delete_backup_codes(self, user_id: str) -> int: ...

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        device_name: Optional[str] = None,
        browser_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session: ...

    def set_session_token(self, session_id: str, token: str) -> None: ...

    def get_user_session(self, session_id: str, user_id: str) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str, now: Optional[datetime] = None) -> list[Session]: ...

    def touch_session(self, session_id: str) -> None: ...

    def deactivate_session(self, session_id: str, user_id: str) -> bool: ...

    def deactivate_user_sessions(self, user_id: str, *, except_session_id: Optional[str] = None) -> int: ...

    # logs
    def append_audit_log(
        self,
        user_id: str,
        action: str,
        status: str,
        *,
        ip_address: Optional[str] = None,
        browser_info: Optional[str] = None,
    ) -> AuditLogEntry: ...

    def list_audit_logs(self, user_id: str) -> list[AuditLogEntry]: ...

    def append_password_change_log(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        browser_info: Optional[str] = None,
    ) -> PasswordChangeLogEntry: ...

    def list_password_change_logs(self, user_id: str) -> list[PasswordChangeLogEntry]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def two_factor_state_from_columns(
    status: Optional[str],
    secret: Optional[str],
    *,
    created_at: Optional[datetime] = None,
    enabled_at: Optional[datetime] = None,
    last_used_step: Optional[int] = None,
) -> TwoFactorState:
    """Rebuild the tagged two-factor variant from its flat stored columns.

    A row claiming ``enabled`` with no secret collapses to disabled so that the
    enabled variant always carries a secret.
    """
    if status == TWO_FACTOR_ENABLED and secret:
        kwargs = {"last_used_step": last_used_step}
        if enabled_at is not None:
            kwargs["enabled_at"] = ensure_utc(enabled_at)
        return TwoFactorEnabled(secret=secret, **kwargs)
    if status == TWO_FACTOR_PENDING and secret:
        if created_at is not None:
            return TwoFactorPending(secret=secret, created_at=ensure_utc(created_at))
        return TwoFactorPending(secret=secret)
    return TwoFactorDisabled()


class SecretBox:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest."""

    def __init__(self, key_material: str | None = None, *, fs_root: Path | None = None) -> None:
        material = (
            key_material
            or os.getenv("TWO_FACTOR_ENCRYPTION_KEY")
            or os.getenv("JWT_SECRET")
        )
        if not material:
            material = self._load_or_create_fallback(fs_root)
        try:
            self._cipher = Fernet(self._derive_cipher_key(material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize two-factor cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @staticmethod
    def _load_or_create_fallback(fs_root: Path | None) -> str:
        shared_fs = Path(os.getenv("SHARED_FS_ROOT", "/srv/rollt"))
        candidates = [shared_fs / ".jwt_secret"]
        if fs_root is not None:
            candidates.append(fs_root / ".jwt_secret")
        for candidate in candidates:
            try:
                if candidate.exists():
                    material = candidate.read_text().strip()
                    if material:
                        return material
            except OSError:
                continue
        generated = secrets.token_urlsafe(64)
        secret_path = candidates[0]
        try:
            secret_path.parent.mkdir(parents=True, exist_ok=True)
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            raise RuntimeError("Unable to persist two-factor encryption key") from exc
        return generated

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold the plain secret
            logger.warning("two_factor_secret_decrypt_failed")
            return secret
