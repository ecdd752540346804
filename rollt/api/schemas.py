from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Upper bound for any credential-like string accepted from clients
MAX_SECRET_LENGTH = 1024


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Requests. Fields are optional so that missing values surface as the
# service's own 400 message rather than a schema error.
class RegisterRequest(_CamelModel):
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=MAX_SECRET_LENGTH)


class LoginRequest(_CamelModel):
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=MAX_SECRET_LENGTH)
    code: Optional[str] = Field(default=None, max_length=32)


class PasswordChangeRequest(_CamelModel):
    current_password: Optional[str] = Field(
        default=None, alias="currentPassword", max_length=MAX_SECRET_LENGTH
    )
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_SECRET_LENGTH
    )


class PasswordStrengthRequest(_CamelModel):
    password: Optional[str] = Field(default=None, max_length=MAX_SECRET_LENGTH)


class TwoFactorVerifyRequest(_CamelModel):
    code: Optional[str] = Field(default=None, max_length=32)


class TwoFactorDisableRequest(_CamelModel):
    current_password: Optional[str] = Field(
        default=None, alias="currentPassword", max_length=MAX_SECRET_LENGTH
    )


# Responses
class SuccessResponse(_CamelModel):
    success: bool = True
    message: str


class RevokeAllResponse(SuccessResponse):
    revoked_count: int = Field(alias="revokedCount")


class UserResponse(_CamelModel):
    id: str
    username: str
    email: str


class AuthResponse(_CamelModel):
    message: str
    token: str
    user: UserResponse


class PasswordStrengthResponse(_CamelModel):
    score: int
    label: str
    valid: bool


class TwoFactorGenerateResponse(_CamelModel):
    qr_code: str = Field(alias="qrCode")
    secret: str
    message: str


class TwoFactorVerifyResponse(SuccessResponse):
    backup_codes: List[str] = Field(alias="backupCodes")


class SessionResponse(_CamelModel):
    id: str
    device_name: str = Field(alias="deviceName")
    browser: str
    location: str
    last_active: datetime = Field(alias="lastActive")
    current: bool = False


class SecurityInfoResponse(_CamelModel):
    two_factor_enabled: bool = Field(alias="twoFactorEnabled")
    sessions: List[SessionResponse]


class HealthResponse(_CamelModel):
    status: str
    checks: dict[str, str]
