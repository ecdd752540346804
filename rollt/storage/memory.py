from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rollt.logging import get_logger
from rollt.storage.common import (
    TWO_FACTOR_DISABLED,
    TWO_FACTOR_ENABLED,
    TWO_FACTOR_PENDING,
    SecretBox,
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


class MemoryStore:
    """In-process store that snapshots its state to a JSON file under ``fs_root``."""

    def __init__(
        self, fs_root: str = "/tmp/rollt", *, two_factor_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.two_factor: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Session] = {}
        self.backup_codes: Dict[str, BackupCode] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self.password_change_logs: List[PasswordChangeLogEntry] = []
        # Reentrant so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._secret_box = SecretBox(two_factor_encryption_key, fs_root=self.fs_root)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users / credentials
    def create_user(
        self, username: str, email: str, *, avatar: Optional[str] = None
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == normalized:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username.lower() == username.lower():
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()), username=username, email=normalized, avatar=avatar
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            user.updated_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # two-factor
    def get_two_factor_state(self, user_id: str) -> TwoFactorState:
        with self._data_lock:
            row = self.two_factor.get(user_id) or {}
            return two_factor_state_from_columns(
                row.get("status"),
                self._secret_box.decrypt(row.get("secret")),
                created_at=row.get("created_at"),
                enabled_at=row.get("enabled_at"),
                last_used_step=row.get("last_used_step"),
            )

    def set_two_factor_pending(self, user_id: str, secret: str) -> TwoFactorPending:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            state = TwoFactorPending(secret=secret)
            self.two_factor[user_id] = {
                "status": TWO_FACTOR_PENDING,
                "secret": self._secret_box.encrypt(secret),
                "created_at": state.created_at,
                "enabled_at": None,
                "last_used_step": None,
            }
            self._persist_state()
            return state

    def enable_two_factor(
        self, user_id: str, last_used_step: Optional[int] = None
    ) -> TwoFactorEnabled:
        with self._data_lock:
            row = self.two_factor.get(user_id)
            if not row or not row.get("secret"):
                raise ConstraintViolation(
                    "two-factor secret missing", {"user_id": user_id}
                )
            now = utcnow()
            row["status"] = TWO_FACTOR_ENABLED
            row["enabled_at"] = now
            row["last_used_step"] = last_used_step
            self._persist_state()
            return TwoFactorEnabled(
                secret=self._secret_box.decrypt(row["secret"]),
                enabled_at=now,
                last_used_step=last_used_step,
            )

    def record_totp_step(self, user_id: str, step: int) -> None:
        with self._data_lock:
            row = self.two_factor.get(user_id)
            if not row:
                return
            current = row.get("last_used_step")
            if current is None or step > current:
                row["last_used_step"] = step
                self._persist_state()

    def disable_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            self.two_factor[user_id] = {"status": TWO_FACTOR_DISABLED, "secret": None}
            self._persist_state()

    def add_backup_code(self, user_id: str, code_hash: str) -> BackupCode:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for backup code", {"user_id": user_id}
                )
            code = BackupCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=code_hash)
            self.backup_codes[code.id] = code
            self._persist_state()
            return code

    def list_backup_codes(
        self, user_id: str, *, unused_only: bool = False
    ) -> list[BackupCode]:
        with self._data_lock:
            codes = [
                c
                for c in self.backup_codes.values()
                if c.user_id == user_id and (not unused_only or c.used_at is None)
            ]
            return sorted(codes, key=lambda c: c.created_at)

    def consume_backup_code(self, code_id: str) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.used_at is not None:
                return False
            code.used_at = utcnow()
            self._persist_state()
            return True

    def delete_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            stale = [cid for cid, c in self.backup_codes.items() if c.user_id == user_id]
            for cid in stale:
                self.backup_codes.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        device_name: Optional[str] = None,
        browser_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                device_name=device_name,
                browser_info=browser_info,
                ip_address=ip_address,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def set_session_token(self, session_id: str, token: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.token = token
            self._persist_state()

    def get_user_session(self, session_id: str, user_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id:
                return None
            return sess

    def list_active_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> list[Session]:
        now = now or utcnow()
        with self._data_lock:
            live = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_live(now)
            ]
            return sorted(live, key=lambda s: s.last_activity_at, reverse=True)

    def touch_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_activity_at = utcnow()
            self._persist_state()

    def deactivate_session(self, session_id: str, user_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id:
                return False
            sess.is_active = False
            sess.revoked_at = utcnow()
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        now = utcnow()
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id is not None and sess.id == except_session_id:
                    continue
                sess.is_active = False
                sess.revoked_at = now
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

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
        with self._data_lock:
            self.audit_logs.append(entry)
            self._persist_state()
        return entry

    def list_audit_logs(self, user_id: str) -> list[AuditLogEntry]:
        with self._data_lock:
            return [e for e in self.audit_logs if e.user_id == user_id]

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
        with self._data_lock:
            self.password_change_logs.append(entry)
            self._persist_state()
        return entry

    def list_password_change_logs(self, user_id: str) -> list[PasswordChangeLogEntry]:
        with self._data_lock:
            return [e for e in self.password_change_logs if e.user_id == user_id]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "two_factor": [
                {
                    "user_id": user_id,
                    "status": row.get("status"),
                    "secret": row.get("secret"),
                    "created_at": self._serialize_datetime(row.get("created_at")),
                    "enabled_at": self._serialize_datetime(row.get("enabled_at")),
                    "last_used_step": row.get("last_used_step"),
                }
                for user_id, row in self.two_factor.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "backup_codes": [
                {
                    "id": c.id,
                    "user_id": c.user_id,
                    "code_hash": c.code_hash,
                    "created_at": self._serialize_datetime(c.created_at),
                    "used_at": self._serialize_datetime(c.used_at),
                }
                for c in self.backup_codes.values()
            ],
            "audit_logs": [
                {
                    "id": e.id,
                    "user_id": e.user_id,
                    "action": e.action,
                    "status": e.status,
                    "ip_address": e.ip_address,
                    "browser_info": e.browser_info,
                    "created_at": self._serialize_datetime(e.created_at),
                }
                for e in self.audit_logs
            ],
            "password_change_logs": [
                {
                    "id": e.id,
                    "user_id": e.user_id,
                    "ip_address": e.ip_address,
                    "browser_info": e.browser_info,
                    "changed_at": self._serialize_datetime(e.changed_at),
                }
                for e in self.password_change_logs
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.two_factor = {
            row["user_id"]: {
                "status": row.get("status"),
                "secret": row.get("secret"),
                "created_at": self._deserialize_datetime(row.get("created_at")),
                "enabled_at": self._deserialize_datetime(row.get("enabled_at")),
                "last_used_step": row.get("last_used_step"),
            }
            for row in data.get("two_factor", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.backup_codes = {
            c["id"]: BackupCode(
                id=c["id"],
                user_id=c["user_id"],
                code_hash=c["code_hash"],
                created_at=self._deserialize_datetime(c["created_at"]),
                used_at=self._deserialize_datetime(c.get("used_at")),
            )
            for c in data.get("backup_codes", [])
        }
        self.audit_logs = [
            AuditLogEntry(
                id=e["id"],
                user_id=e["user_id"],
                action=e["action"],
                status=e["status"],
                ip_address=e.get("ip_address"),
                browser_info=e.get("browser_info"),
                created_at=self._deserialize_datetime(e["created_at"]),
            )
            for e in data.get("audit_logs", [])
        ]
        self.password_change_logs = [
            PasswordChangeLogEntry(
                id=e["id"],
                user_id=e["user_id"],
                ip_address=e.get("ip_address"),
                browser_info=e.get("browser_info"),
                changed_at=self._deserialize_datetime(e["changed_at"]),
            )
            for e in data.get("password_change_logs", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "avatar": user.avatar,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        created_at = self._deserialize_datetime(data["created_at"])
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            avatar=data.get("avatar"),
            created_at=created_at,
            updated_at=self._deserialize_datetime(data.get("updated_at")) or created_at,
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token": session.token,
            "device_name": session.device_name,
            "browser_info": session.browser_info,
            "ip_address": session.ip_address,
            "is_active": session.is_active,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "revoked_at": self._serialize_datetime(session.revoked_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        created_at = self._deserialize_datetime(data["created_at"])
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token=data.get("token"),
            device_name=data.get("device_name"),
            browser_info=data.get("browser_info"),
            ip_address=data.get("ip_address"),
            is_active=data.get("is_active", True),
            created_at=created_at,
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at"))
            or created_at,
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
