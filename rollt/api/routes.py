from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from rollt.api.schemas import (
    AuthResponse,
    LoginRequest,
    PasswordChangeRequest,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    RegisterRequest,
    RevokeAllResponse,
    SecurityInfoResponse,
    SessionResponse,
    SuccessResponse,
    TwoFactorDisableRequest,
    TwoFactorGenerateResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
    UserResponse,
)
from rollt.logging import get_logger
from rollt.service.auth import AuthContext, ClientInfo, LoginResult
from rollt.service.errors import BadRequestError, RateLimitedError
from rollt.service.password_policy import score_password
from rollt.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def get_app_runtime(request: Request) -> Runtime:
    """Runtime attached to the app by ``create_app``, else the process default."""
    runtime = getattr(request.app.state, "runtime", None)
    return runtime if runtime is not None else get_runtime()


def get_client(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_app_runtime),
) -> AuthContext:
    return runtime.auth.authenticate(authorization)


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, *, response: Optional[Response] = None
) -> None:
    window = runtime.settings.rate_limit_window_seconds
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, reset_seconds=reset_seconds)
        raise RateLimitedError(
            "Too many requests, please try again later",
            detail={"retryAfter": max(reset_seconds, 1)},
        )


def _auth_response(message: str, result: LoginResult) -> AuthResponse:
    return AuthResponse(
        message=message,
        token=result.token,
        user=UserResponse(
            id=result.user.id, username=result.user.username, email=result.user.email
        ),
    )


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(
    body: RegisterRequest,
    runtime: Runtime = Depends(get_app_runtime),
    client: ClientInfo = Depends(get_client),
):
    """Create an account and sign it in.

    Raises:
        400: missing fields, malformed email or a password that fails the policy
        409: username or email already taken
    """
    subject = (body.email or "").strip().lower() or client.ip_address or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"signup:{subject}",
        runtime.settings.signup_rate_limit_per_minute,
    )
    result = await runtime.auth.register(
        body.username, body.email, body.password, client=client
    )
    return _auth_response("Registration successful", result)


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    runtime: Runtime = Depends(get_app_runtime),
    client: ClientInfo = Depends(get_client),
):
    """Exchange email and password (plus a 2FA code when enabled) for a token.

    Raises:
        400: missing fields
        401: bad credentials, or a missing/invalid second factor
    """
    if body.email:
        await _enforce_rate_limit(
            runtime,
            f"login:{body.email.strip().lower()}",
            runtime.settings.login_rate_limit_per_minute,
        )
    result = await runtime.auth.login(body.email, body.password, body.code, client=client)
    return _auth_response("Login successful", result)


@router.post("/logout", response_model=SuccessResponse)
async def logout(
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
):
    runtime.auth.logout(user)
    return SuccessResponse(message="Logged out")


@router.post("/password-strength", response_model=PasswordStrengthResponse)
async def password_strength(body: PasswordStrengthRequest):
    if body.password is None:
        raise BadRequestError("Password is required")
    strength = score_password(body.password)
    return PasswordStrengthResponse(
        score=strength.score, label=strength.label, valid=strength.valid
    )


@router.post("/change-password", response_model=SuccessResponse)
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
    client: ClientInfo = Depends(get_client),
):
    """Replace the caller's password after re-checking the current one.

    Raises:
        400: missing fields, policy violation, or new password equal to the old one
        401: current password is wrong
        404: no password on file for the caller
    """
    await _enforce_rate_limit(
        runtime,
        f"password:{user.user_id}",
        runtime.settings.password_rate_limit_per_minute,
        response=response,
    )
    await runtime.account_security.change_password(
        user.user_id, body.current_password, body.new_password, client=client
    )
    return SuccessResponse(message="Password changed successfully")


@router.post("/2fa/generate", response_model=TwoFactorGenerateResponse)
async def generate_two_factor(
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"mfa:generate:{user.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
    )
    enrollment = runtime.account_security.generate_two_factor(user.user_id)
    return TwoFactorGenerateResponse(
        qr_code=enrollment.qr_code,
        secret=enrollment.secret,
        message="Scan the QR code with your authenticator app, then verify with a code",
    )


@router.post("/2fa/verify", response_model=TwoFactorVerifyResponse)
async def verify_two_factor(
    body: TwoFactorVerifyRequest,
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
    client: ClientInfo = Depends(get_client),
):
    """Confirm 2FA enrollment; backup codes are returned only in this response."""
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{user.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
    )
    codes = await runtime.account_security.verify_two_factor(
        user.user_id, body.code, client=client
    )
    return TwoFactorVerifyResponse(
        message="Two-factor authentication enabled",
        backup_codes=codes,
    )


@router.post("/2fa/disable", response_model=SuccessResponse)
async def disable_two_factor(
    body: TwoFactorDisableRequest,
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
    client: ClientInfo = Depends(get_client),
):
    await _enforce_rate_limit(
        runtime,
        f"mfa:disable:{user.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
    )
    await runtime.account_security.disable_two_factor(
        user.user_id, body.current_password, client=client
    )
    return SuccessResponse(message="Two-factor authentication disabled")


@router.get("/security-info", response_model=SecurityInfoResponse)
async def security_info(
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
):
    info = runtime.account_security.security_info(user)
    return SecurityInfoResponse(
        two_factor_enabled=info.two_factor_enabled,
        sessions=[
            SessionResponse(
                id=s.id,
                device_name=s.device_name,
                browser=s.browser,
                location=s.location,
                last_active=s.last_active,
                current=s.current,
            )
            for s in info.sessions
        ],
    )


@router.post("/logout-session/{session_id}", response_model=SuccessResponse)
async def logout_session(
    session_id: str = Path(..., max_length=128),
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
    client: ClientInfo = Depends(get_client),
):
    runtime.account_security.revoke_session(user.user_id, session_id, client=client)
    return SuccessResponse(message="Session logged out")


@router.post("/logout-all-devices", response_model=RevokeAllResponse)
async def logout_all_devices(
    user: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_app_runtime),
    client: ClientInfo = Depends(get_client),
):
    revoked = runtime.account_security.revoke_all_sessions(user, client=client)
    return RevokeAllResponse(
        message="Logged out from all other devices", revoked_count=revoked
    )
