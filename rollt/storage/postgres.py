from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from rollt.logging import get_logger
from rollt.storage.common import (
    TWO_FACTOR_DISABLED,
    TWO_FACTOR_ENABLED,
    TWO_FACTOR_PENDING,
    SecretBox,
    ensure_utc,
    normalize_email,
    two_factor_state_from_columns,
)
from rollt.storage.errors import ConstraintViolation
from rollt.storage.models import (
    AuditLogEntry,
    BackupCode,
    PasswordChangeLogEntry,
    Session,
    TwoFactorEnabled,
    TwoFactorPending,
    TwoFactorState,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        password_algo TEXT,
        avatar TEXT,
        two_factor_status TEXT NOT NULL DEFAULT 'disabled',
        two_factor_secret TEXT,
        two_factor_created_at TIMESTAMPTZ,
        two_factor_enabled_at TIMESTAMPTZ,
        two_factor_last_step BIGINT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token TEXT,
        device_name TEXT,
        browser_info TEXT,
        ip_address TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_active_idx ON sessions (user_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_backup_codes (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_audit_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        ip_address TEXT,
        browser_info TEXT,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_change_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        ip_address TEXT,
        browser_info TEXT,
        changed_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, sessions and the security audit trail."""

    def __init__(
        self, dsn: str, fs_root: str, *, two_factor_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._secret_box = SecretBox(two_factor_encryption_key, fs_root=self.fs_root)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account security tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # users / credentials
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        created_at = ensure_utc(row.get("created_at") or utcnow())
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            avatar=row.get("avatar"),
            created_at=created_at,
            updated_at=ensure_utc(row.get("updated_at") or created_at),
        )

    def create_user(
        self, username: str, email: str, *, avatar: Optional[str] = None
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, username, email, avatar)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, username, email, avatar, created_at, updated_at
                    """,
                    (user_id, username, normalized, avatar),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, username, email, avatar, created_at, updated_at FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, username, email, avatar, created_at, updated_at FROM users WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row.get("password_algo") or "")

    # two-factor
    def get_two_factor_state(self, user_id: str) -> TwoFactorState:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT two_factor_status, two_factor_secret, two_factor_created_at,
                       two_factor_enabled_at, two_factor_last_step
                FROM users WHERE id = %s
                """,
                (user_id,),
            ).fetchone()
        row = row or {}
        return two_factor_state_from_columns(
            row.get("two_factor_status"),
            self._secret_box.decrypt(row.get("two_factor_secret")),
            created_at=row.get("two_factor_created_at"),
            enabled_at=row.get("two_factor_enabled_at"),
            last_used_step=row.get("two_factor_last_step"),
        )

    def set_two_factor_pending(self, user_id: str, secret: str) -> TwoFactorPending:
        state = TwoFactorPending(secret=secret)
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET two_factor_status = %s, two_factor_secret = %s,
                    two_factor_created_at = %s, two_factor_enabled_at = NULL,
                    two_factor_last_step = NULL
                WHERE id = %s
                """,
                (
                    TWO_FACTOR_PENDING,
                    self._secret_box.encrypt(secret),
                    state.created_at,
                    user_id,
                ),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
        return state

    def enable_two_factor(
        self, user_id: str, last_used_step: Optional[int] = None
    ) -> TwoFactorEnabled:
        now = utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET two_factor_status = %s, two_factor_enabled_at = %s,
                    two_factor_last_step = %s
                WHERE id = %s AND two_factor_secret IS NOT NULL
                RETURNING two_factor_secret
                """,
                (TWO_FACTOR_ENABLED, now, last_used_step, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("two-factor secret missing", {"user_id": user_id})
        return TwoFactorEnabled(
            secret=self._secret_box.decrypt(row["two_factor_secret"]),
            enabled_at=now,
            last_used_step=last_used_step,
        )

    def record_totp_step(self, user_id: str, step: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users SET two_factor_last_step = %s
                WHERE id = %s
                  AND (two_factor_last_step IS NULL OR two_factor_last_step < %s)
                """,
                (step, user_id, step),
            )

    def disable_two_factor(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET two_factor_status = %s, two_factor_secret = NULL,
                    two_factor_created_at = NULL, two_factor_enabled_at = NULL,
                    two_factor_last_step = NULL
                WHERE id = %s
                """,
                (TWO_FACTOR_DISABLED, user_id),
            )

    @staticmethod
    def _backup_code_from_row(row: Dict[str, Any]) -> BackupCode:
        used_at = row.get("used_at")
        return BackupCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code_hash=row["code_hash"],
            created_at=ensure_utc(row.get("created_at") or utcnow()),
            used_at=ensure_utc(used_at) if used_at else None,
        )

    def add_backup_code(self, user_id: str, code_hash: str) -> BackupCode:
        code = BackupCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=code_hash)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_backup_codes (id, user_id, code_hash, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (code.id, code.user_id, code.code_hash, code.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for backup code", {"user_id": user_id}
            )
        return code

    def list_backup_codes(
        self, user_id: str, *, unused_only: bool = False
    ) -> list[BackupCode]:
        query = "SELECT * FROM two_factor_backup_codes WHERE user_id = %s"
        if unused_only:
            query += " AND used_at IS NULL"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._backup_code_from_row(row) for row in rows]

    def consume_backup_code(self, code_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE two_factor_backup_codes SET used_at = now()
                WHERE id = %s AND used_at IS NULL
                """,
                (code_id,),
            )
            return cur.rowcount > 0

    def delete_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM two_factor_backup_codes WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    # sessions
    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        created_at = ensure_utc(row["created_at"])
        revoked_at = row.get("revoked_at")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row.get("token"),
            device_name=row.get("device_name"),
            browser_info=row.get("browser_info"),
            ip_address=row.get("ip_address"),
            is_active=bool(row.get("is_active", True)),
            created_at=created_at,
            expires_at=ensure_utc(row["expires_at"]),
            last_activity_at=ensure_utc(row.get("last_activity_at") or created_at),
            revoked_at=ensure_utc(revoked_at) if revoked_at else None,
        )

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        device_name: Optional[str] = None,
        browser_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            device_name=device_name,
            browser_info=browser_info,
            ip_address=ip_address,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, device_name, browser_info, ip_address,
                                          is_active, created_at, expires_at, last_activity_at)
                    VALUES (%s, %s, %s, %s, %s, TRUE, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.device_name,
                        sess.browser_info,
                        sess.ip_address,
                        sess.created_at,
                        sess.expires_at,
                        sess.last_activity_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def set_session_token(self, session_id: str, token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET token = %s WHERE id = %s", (token, session_id)
            )

    def get_user_session(self, session_id: str, user_id: str) -> Optional[Session]:
        # No is_active filter: revoking an already revoked session still finds it
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s AND user_id = %s",
                (session_id, user_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> list[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE user_id = %s AND is_active = TRUE AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET last_activity_at = now() WHERE id = %s",
                (session_id,),
            )

    def deactivate_session(self, session_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET is_active = FALSE, revoked_at = now()
                WHERE id = %s AND user_id = %s
                """,
                (session_id, user_id),
            )
            return cur.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        query = """
            UPDATE sessions SET is_active = FALSE, revoked_at = now()
            WHERE user_id = %s AND is_active = TRUE
        """
        params: list[Any] = [user_id]
        if except_session_id is not None:
            query += " AND id <> %s"
            params.append(except_session_id)
        with self._connect() as conn:
            cur = conn.execute(query, tuple(params))
            return cur.rowcount

    # logs
    def append_audit_log(
        self,
        user_id: str,
        action: str,
        status: str,
        *,
        ip_address: Optional[str] = None,
        browser_info: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=action,
            status=status,
            ip_address=ip_address,
            browser_info=browser_info,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_audit_logs (id, user_id, action, ip_address, browser_info, status, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.ip_address,
                    entry.browser_info,
                    entry.status,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(self, user_id: str) -> list[AuditLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM security_audit_logs WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            AuditLogEntry(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                action=row["action"],
                status=row["status"],
                ip_address=row.get("ip_address"),
                browser_info=row.get("browser_info"),
                created_at=ensure_utc(row["created_at"]),
            )
            for row in rows
        ]

    def append_password_change_log(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        browser_info: Optional[str] = None,
    ) -> PasswordChangeLogEntry:
        entry = PasswordChangeLogEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            ip_address=ip_address,
            browser_info=browser_info,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_change_logs (id, user_id, ip_address, browser_info, changed_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.ip_address,
                    entry.browser_info,
                    entry.changed_at,
                ),
            )
        return entry

    def list_password_change_logs(self, user_id: str) -> list[PasswordChangeLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM password_change_logs WHERE user_id = %s ORDER BY changed_at",
                (user_id,),
            ).fetchall()
        return [
            PasswordChangeLogEntry(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                ip_address=row.get("ip_address"),
                browser_info=row.get("browser_info"),
                changed_at=ensure_utc(row["changed_at"]),
            )
            for row in rows
        ]
