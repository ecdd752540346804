from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    avatar: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TwoFactorDisabled:
    """No secret on file; login needs only the password."""

    enabled: bool = field(default=False, init=False)
    secret: Optional[str] = field(default=None, init=False)


@dataclass(frozen=True)
class TwoFactorPending:
    """Secret generated and shown to the user but never confirmed with a code."""

    secret: str
    created_at: datetime = field(default_factory=utcnow)
    enabled: bool = field(default=False, init=False)


@dataclass(frozen=True)
class TwoFactorEnabled:
    """Secret confirmed; ``last_used_step`` is the newest accepted TOTP step."""

    secret: str
    enabled_at: datetime = field(default_factory=utcnow)
    last_used_step: Optional[int] = None
    enabled: bool = field(default=True, init=False)


TwoFactorState = Union[TwoFactorDisabled, TwoFactorPending, TwoFactorEnabled]


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    token: Optional[str] = None
    device_name: Optional[str] = None
    browser_info: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 7 * 24 * 60,
        *,
        device_name: str | None = None,
        browser_info: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_activity_at=now,
            device_name=device_name,
            browser_info=browser_info,
            ip_address=ip_address,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.expires_at > (now or utcnow())


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class AuditLogEntry:
    id: str
    user_id: str
    action: str
    status: str
    ip_address: Optional[str] = None
    browser_info: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordChangeLogEntry:
    id: str
    user_id: str
    ip_address: Optional[str] = None
    browser_info: Optional[str] = None
    changed_at: datetime = field(default_factory=utcnow)
