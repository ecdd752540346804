from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from rollt.logging import get_logger
from rollt.service.audit import (
    LOGOUT_ALL_DEVICES,
    PASSWORD_CHANGED,
    SESSION_REVOKED,
    STATUS_FAILED,
    TWO_FACTOR_DISABLED,
    TWO_FACTOR_ENABLED,
    TWO_FACTOR_VERIFICATION_FAILED,
    AuditTrail,
    NonCriticalWriter,
)
from rollt.service.auth import AuthContext, AuthService, ClientInfo
from rollt.service.errors import BadRequestError, NotFoundError, UnauthorizedError
from rollt.service.password_policy import POLICY_MESSAGE, meets_policy
from rollt.service.two_factor import Enrollment, TwoFactorService
from rollt.storage.common import SecurityStore
from rollt.storage.models import Session, TwoFactorEnabled

logger = get_logger(__name__)


@dataclass
class SessionView:
    id: str
    device_name: str
    browser: str
    location: str
    last_active: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: Optional[str]) -> "SessionView":
        return cls(
            id=session.id,
            device_name=session.device_name or "Unknown device",
            browser=session.browser_info or "Unknown browser",
            location=session.ip_address or "unknown",
            last_active=session.last_activity_at,
            current=session.id == current_session_id,
        )


@dataclass
class SecurityInfo:
    two_factor_enabled: bool
    sessions: List[SessionView]


class AccountSecurityService:
    """Password change, two-factor lifecycle and session revocation.

    Every operation validates before it mutates. Secondary writes (audit rows,
    the password change log, backup code housekeeping) go through the
    ``NonCriticalWriter`` and never fail the request. Nothing here is wrapped
    in a transaction: enabling two-factor and inserting backup codes are
    separate statements, so a failure between them leaves two-factor enabled
    with fewer codes than requested.
    """

    def __init__(
        self,
        store: SecurityStore,
        auth: AuthService,
        two_factor: TwoFactorService,
        audit: AuditTrail,
        writer: NonCriticalWriter,
    ) -> None:
        self.store = store
        self.auth = auth
        self.two_factor = two_factor
        self.audit = audit
        self.writer = writer

    async def change_password(
        self,
        user_id: str,
        current_password: Optional[str],
        new_password: Optional[str],
        *,
        client: Optional[ClientInfo] = None,
    ) -> None:
        client = client or ClientInfo()
        if not current_password or not new_password:
            raise BadRequestError("Current password and new password are required")
        if not meets_policy(new_password):
            raise BadRequestError(POLICY_MESSAGE)
        record = self.store.get_password_record(user_id)
        if not record:
            raise NotFoundError("User not found")
        stored_hash, algo = record
        if not await self.auth.verify_hash(stored_hash, algo, current_password):
            raise UnauthorizedError("Current password is incorrect")
        if await self.auth.verify_hash(stored_hash, algo, new_password):
            raise BadRequestError("New password must be different from the current password")

        await self.auth.save_password(user_id, new_password)
        logger.info("password_changed", user_id=user_id)
        self.audit.record_password_change(
            user_id, ip_address=client.ip_address, browser_info=client.browser_info
        )
        self.audit.record(
            user_id,
            PASSWORD_CHANGED,
            ip_address=client.ip_address,
            browser_info=client.browser_info,
        )

    def generate_two_factor(self, user_id: str) -> Enrollment:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        # Leaving the enabled state requires disable, which checks the password
        if self.store.get_two_factor_state(user.id).enabled:
            raise BadRequestError("2FA is already enabled")
        enrollment = self.two_factor.new_enrollment(user.email)
        self.store.set_two_factor_pending(user.id, enrollment.secret)
        logger.info("two_factor_secret_generated", user_id=user.id)
        return enrollment

    async def verify_two_factor(
        self,
        user_id: str,
        code: Optional[str],
        *,
        client: Optional[ClientInfo] = None,
    ) -> List[str]:
        """Confirm enrollment with a TOTP code and issue fresh backup codes.

        Returns the plaintext backup codes whose hashes were stored. That is
        normally ``backup_code_count`` codes, fewer if some inserts failed.
        """
        client = client or ClientInfo()
        if not code:
            raise BadRequestError("Verification code is required")
        state = self.store.get_two_factor_state(user_id)
        if not state.secret:
            raise BadRequestError("2FA not set up")
        last_used_step = state.last_used_step if isinstance(state, TwoFactorEnabled) else None
        step = self.two_factor.match_step(state.secret, code, last_used_step=last_used_step)
        if step is None:
            self.audit.record(
                user_id,
                TWO_FACTOR_VERIFICATION_FAILED,
                STATUS_FAILED,
                ip_address=client.ip_address,
                browser_info=client.browser_info,
            )
            raise UnauthorizedError("Invalid verification code")

        self.store.enable_two_factor(user_id, last_used_step=step)
        logger.info("two_factor_enabled", user_id=user_id)
        self.audit.record(
            user_id,
            TWO_FACTOR_ENABLED,
            ip_address=client.ip_address,
            browser_info=client.browser_info,
        )
        return await self._issue_backup_codes(user_id)

    async def _issue_backup_codes(self, user_id: str) -> List[str]:
        self.writer.run(
            "backup_code_cleanup",
            lambda: self.store.delete_backup_codes(user_id),
            user_id=user_id,
        )

        async def _persist(code: str) -> str:
            code_hash, _ = await self.auth.hash_password(code)
            self.store.add_backup_code(user_id, code_hash)
            return code

        issued: List[str] = []
        for code in self.two_factor.generate_backup_codes():
            saved = await self.writer.run_async(
                "backup_code_insert", lambda c=code: _persist(c), user_id=user_id
            )
            if saved is not None:
                issued.append(saved)
        if len(issued) < self.two_factor.backup_code_count:
            logger.warning(
                "backup_codes_partially_issued",
                user_id=user_id,
                issued=len(issued),
                expected=self.two_factor.backup_code_count,
            )
        return issued

    async def disable_two_factor(
        self,
        user_id: str,
        current_password: Optional[str],
        *,
        client: Optional[ClientInfo] = None,
    ) -> None:
        client = client or ClientInfo()
        if not current_password:
            raise BadRequestError("Current password is required")
        record = self.store.get_password_record(user_id)
        if not record:
            raise NotFoundError("User not found")
        stored_hash, algo = record
        if not await self.auth.verify_hash(stored_hash, algo, current_password):
            raise UnauthorizedError("Password is incorrect")

        self.store.disable_two_factor(user_id)
        logger.info("two_factor_disabled", user_id=user_id)
        self.writer.run(
            "backup_code_cleanup",
            lambda: self.store.delete_backup_codes(user_id),
            user_id=user_id,
        )
        self.audit.record(
            user_id,
            TWO_FACTOR_DISABLED,
            ip_address=client.ip_address,
            browser_info=client.browser_info,
        )

    def security_info(self, ctx: AuthContext) -> SecurityInfo:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise NotFoundError("User not found")
        state = self.store.get_two_factor_state(user.id)
        if ctx.session_id:
            self.writer.run(
                "session_touch",
                lambda: self.store.touch_session(ctx.session_id),
                session_id=ctx.session_id,
            )
        try:
            sessions = self.store.list_active_sessions(user.id)
        except Exception as exc:
            logger.warning(
                "session_list_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
            sessions = []
        return SecurityInfo(
            two_factor_enabled=state.enabled,
            sessions=[SessionView.from_session(s, ctx.session_id) for s in sessions],
        )

    def revoke_session(
        self,
        user_id: str,
        session_id: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> None:
        client = client or ClientInfo()
        # Ownership and existence collapse into one 404
        session = self.store.get_user_session(session_id, user_id)
        if not session:
            raise NotFoundError("Session not found")
        self.store.deactivate_session(session.id, user_id)
        logger.info("session_revoked", user_id=user_id, session_id=session.id)
        self.audit.record(
            user_id,
            SESSION_REVOKED,
            ip_address=client.ip_address,
            browser_info=client.browser_info,
        )

    def revoke_all_sessions(
        self, ctx: AuthContext, *, client: Optional[ClientInfo] = None
    ) -> int:
        client = client or ClientInfo()
        revoked = self.store.deactivate_user_sessions(
            ctx.user_id, except_session_id=ctx.session_id
        )
        logger.info(
            "sessions_revoked",
            user_id=ctx.user_id,
            kept_session_id=ctx.session_id,
            revoked=revoked,
        )
        self.audit.record(
            ctx.user_id,
            LOGOUT_ALL_DEVICES,
            ip_address=client.ip_address,
            browser_info=client.browser_info,
        )
        return revoked
