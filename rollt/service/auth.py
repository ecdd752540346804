from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from rollt.config import Settings
from rollt.logging import get_logger
from rollt.service.audit import BACKUP_CODE_USED, AuditTrail
from rollt.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    UnauthorizedError,
)
from rollt.service.password_policy import POLICY_MESSAGE, meets_policy
from rollt.service.two_factor import TwoFactorService, find_backup_code
from rollt.storage.common import SecurityStore
from rollt.storage.errors import ConstraintViolation
from rollt.storage.models import Session, TwoFactorEnabled, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.]{3,30}$")

_BROWSERS = (
    ("Edg/", "Edge"),
    ("OPR/", "Opera"),
    ("Firefox/", "Firefox"),
    ("Chrome/", "Chrome"),
    ("Safari/", "Safari"),
)
_DEVICES = (
    ("iPhone", "iPhone"),
    ("iPad", "iPad"),
    ("Android", "Android device"),
    ("Windows", "Windows PC"),
    ("Macintosh", "Mac"),
    ("Linux", "Linux PC"),
)


def describe_client(user_agent: Optional[str]) -> Tuple[str, str]:
    """Return ``(device_name, browser)`` labels for a User-Agent string."""
    ua = user_agent or ""
    device = next((label for marker, label in _DEVICES if marker in ua), "Unknown device")
    browser = next((label for marker, label in _BROWSERS if marker in ua), "Unknown browser")
    return device, browser


@dataclass
class AuthContext:
    user_id: str
    session_id: Optional[str] = None
    username: Optional[str] = None
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def browser_info(self) -> Optional[str]:
        return self.user_agent


@dataclass
class LoginResult:
    user: User
    session: Session
    token: str


class AuthService:
    """Password hashing, bearer tokens, and the login/registration flow."""

    def __init__(
        self,
        store: SecurityStore,
        settings: Settings,
        two_factor: TwoFactorService,
        audit: AuditTrail,
    ) -> None:
        self.store = store
        self.settings = settings
        self.two_factor = two_factor
        self.audit = audit
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Small allowance for clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=60)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # password hashing
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    async def hash_password(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self._hash_password, password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def verify_hash(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", algo=algo)
            return False
        return await asyncio.to_thread(self._verify_hash, stored_hash, password)

    async def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        return await self.verify_hash(stored_hash, algo, password)

    async def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = await self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # tokens
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; guards against algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "ignore")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        if not payload.get("sub"):
            return None
        return payload

    def issue_token(self, user: User, session: Session) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "username": user.username,
            "sid": session.id,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(session.expires_at.timestamp()),
        }
        return self._encode_jwt(payload)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve the caller from an ``Authorization`` header.

        Pure token verification: the store is never consulted, so a token stays
        usable until it expires even after its session row is revoked.

        Raises:
            UnauthorizedError: header missing or not a bearer credential.
            ForbiddenError: signature, issuer, audience or expiry is invalid.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("Access token required")
        payload = self._decode_jwt(token)
        if payload is None:
            raise ForbiddenError("Invalid or expired token")
        return AuthContext(
            user_id=str(payload["sub"]),
            session_id=payload.get("sid"),
            username=payload.get("username"),
            claims=payload,
        )

    # registration / login
    def _start_session(self, user: User, client: ClientInfo) -> LoginResult:
        device_name, browser = describe_client(client.user_agent)
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.token_ttl_minutes,
            device_name=device_name,
            browser_info=browser,
            ip_address=client.ip_address,
        )
        token = self.issue_token(user, session)
        self.store.set_session_token(session.id, token)
        session.token = token
        return LoginResult(user=user, session=session, token=token)

    async def register(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
        *,
        client: Optional[ClientInfo] = None,
    ) -> LoginResult:
        if not username or not email or not password:
            raise BadRequestError("username, email and password are required")
        username = username.strip()
        email = email.strip()
        if not _USERNAME_PATTERN.match(username):
            raise BadRequestError(
                "Username must be 3-30 characters of letters, numbers, '_' or '.'"
            )
        if not _EMAIL_PATTERN.match(email):
            raise BadRequestError("Invalid email address")
        if not meets_policy(password):
            raise BadRequestError(POLICY_MESSAGE)
        try:
            user = self.store.create_user(username, email)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        return self._start_session(user, client or ClientInfo())

    async def _check_second_factor(
        self, user: User, state: TwoFactorEnabled, code: str, client: ClientInfo
    ) -> bool:
        step = self.two_factor.match_step(
            state.secret, code, last_used_step=state.last_used_step
        )
        if step is not None:
            self.store.record_totp_step(user.id, step)
            return True
        backup = self.two_factor.normalize_backup_code(code)
        if not backup or self.two_factor.looks_like_totp(backup):
            return False
        candidates = self.store.list_backup_codes(user.id, unused_only=True)
        match = await asyncio.to_thread(
            find_backup_code, candidates, backup, self._verify_hash
        )
        if match is None or not self.store.consume_backup_code(match.id):
            return False
        self.audit.record(
            user.id,
            BACKUP_CODE_USED,
            ip_address=client.ip_address,
            browser_info=client.browser_info,
        )
        return True

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        code: Optional[str] = None,
        *,
        client: Optional[ClientInfo] = None,
    ) -> LoginResult:
        client = client or ClientInfo()
        if not email or not password:
            raise BadRequestError("email and password are required")
        user = self.store.get_user_by_email(email)
        if not user or not await self.verify_password(user.id, password):
            raise UnauthorizedError("Invalid email or password")

        state = self.store.get_two_factor_state(user.id)
        if isinstance(state, TwoFactorEnabled):
            if not code:
                raise UnauthorizedError(
                    "Two-factor code required", detail={"twoFactorRequired": True}
                )
            if not await self._check_second_factor(user, state, code, client):
                self.logger.warning("login_second_factor_failed", user_id=user.id)
                raise UnauthorizedError(
                    "Invalid two-factor code", detail={"twoFactorRequired": True}
                )

        result = self._start_session(user, client)
        self.logger.info("user_logged_in", user_id=user.id, session_id=result.session.id)
        return result

    def logout(self, ctx: AuthContext) -> bool:
        if not ctx.session_id:
            return False
        revoked = self.store.deactivate_session(ctx.session_id, ctx.user_id)
        self.logger.info("user_logged_out", user_id=ctx.user_id, session_id=ctx.session_id)
        return revoked
