"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Bearer token issue and the authentication gate
- Registration and login, including the second factor
"""

import base64
import json
import time

import pyotp
import pytest

from rollt.config import Settings
from rollt.service.audit import BACKUP_CODE_USED, AuditTrail, NonCriticalWriter
from rollt.service.auth import PASSWORD_ALGO, AuthService, ClientInfo, describe_client
from rollt.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    UnauthorizedError,
)
from rollt.service.two_factor import TwoFactorService
from rollt.storage.memory import MemoryStore

PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    audit = AuditTrail(memory_store, NonCriticalWriter())
    return AuthService(memory_store, settings, TwoFactorService(), audit)


@pytest.fixture
def test_user(memory_store, auth_service):
    user = memory_store.create_user("tester", "test@example.com")
    pwd_hash, algo = auth_service._hash_password(PASSWORD)
    memory_store.save_password(user.id, pwd_hash, algo)
    return user


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    data.update(changes)
    new_payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{new_payload}.{sig}"


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, auth_service):
        hash1, algo = auth_service._hash_password(PASSWORD)
        hash2, _ = auth_service._hash_password(PASSWORD)

        assert algo == PASSWORD_ALGO
        assert hash1.startswith("$argon2id$")
        assert hash1 != hash2
        assert PASSWORD not in hash1

    async def test_verify_password_round_trip(self, auth_service, test_user):
        assert await auth_service.verify_password(test_user.id, PASSWORD)
        assert not await auth_service.verify_password(test_user.id, "WrongPassword1!")

    async def test_verify_hash_rejects_unknown_algorithm(self, auth_service):
        pwd_hash, _ = auth_service._hash_password(PASSWORD)
        assert not await auth_service.verify_hash(pwd_hash, "bcrypt", PASSWORD)

    def test_verify_hash_rejects_garbage_hash(self, auth_service):
        assert auth_service._verify_hash("not-a-hash", PASSWORD) is False


class TestAuthenticationGate:
    def _token(self, auth_service, memory_store, user):
        session = memory_store.create_session(user.id, ttl_minutes=60)
        return auth_service.issue_token(user, session), session

    def test_valid_token_yields_context(self, auth_service, memory_store, test_user):
        token, session = self._token(auth_service, memory_store, test_user)

        ctx = auth_service.authenticate(f"Bearer {token}")

        assert ctx.user_id == test_user.id
        assert ctx.session_id == session.id
        assert ctx.username == "tester"
        assert ctx.claims["exp"] == int(session.expires_at.timestamp())

    def test_missing_header_is_unauthorized(self, auth_service):
        with pytest.raises(UnauthorizedError):
            auth_service.authenticate(None)

    def test_non_bearer_scheme_is_unauthorized(self, auth_service, memory_store, test_user):
        token, _ = self._token(auth_service, memory_store, test_user)
        with pytest.raises(UnauthorizedError):
            auth_service.authenticate(f"Basic {token}")

    def test_garbage_token_is_forbidden(self, auth_service):
        with pytest.raises(ForbiddenError):
            auth_service.authenticate("Bearer not.a.jwt")

    def test_tampered_payload_is_forbidden(self, auth_service, memory_store, test_user):
        token, _ = self._token(auth_service, memory_store, test_user)
        with pytest.raises(ForbiddenError):
            auth_service.authenticate(f"Bearer {_tamper_payload(token, sub='someone-else')}")

    def test_expired_token_is_forbidden(self, auth_service, memory_store, test_user):
        token, _ = self._token(auth_service, memory_store, test_user)
        payload = auth_service._decode_jwt(token)
        payload["exp"] = int(time.time()) - 3600
        expired = auth_service._encode_jwt(payload)
        with pytest.raises(ForbiddenError):
            auth_service.authenticate(f"Bearer {expired}")

    def test_wrong_audience_is_forbidden(self, auth_service, memory_store, test_user):
        token, _ = self._token(auth_service, memory_store, test_user)
        payload = auth_service._decode_jwt(token)
        payload["aud"] = "another-service"
        with pytest.raises(ForbiddenError):
            auth_service.authenticate(f"Bearer {auth_service._encode_jwt(payload)}")

    def test_token_signed_with_other_secret_is_forbidden(self, memory_store, test_user, auth_service):
        other = AuthService(
            memory_store,
            Settings(jwt_secret="a-completely-different-secret-value-0123456789"),
            TwoFactorService(),
            auth_service.audit,
        )
        token, _ = self._token(other, memory_store, test_user)
        with pytest.raises(ForbiddenError):
            auth_service.authenticate(f"Bearer {token}")

    def test_gate_never_reads_the_store(self, auth_service, memory_store, test_user):
        token, session = self._token(auth_service, memory_store, test_user)
        memory_store.deactivate_session(session.id, test_user.id)

        # Stateless verification: a revoked session's token still passes until expiry
        assert auth_service.authenticate(f"Bearer {token}").session_id == session.id


class TestRegistration:
    async def test_register_creates_user_and_session(self, auth_service, memory_store):
        client = ClientInfo(ip_address="10.0.0.1", user_agent="Mozilla/5.0 (Windows NT 10.0) Chrome/120.0")
        result = await auth_service.register("newbie", "New@Example.com", PASSWORD, client=client)

        assert result.user.email == "new@example.com"
        assert memory_store.get_password_record(result.user.id)[1] == PASSWORD_ALGO
        assert result.session.device_name == "Windows PC"
        assert result.session.browser_info == "Chrome"
        assert memory_store.sessions[result.session.id].token == result.token

    async def test_register_requires_all_fields(self, auth_service):
        with pytest.raises(BadRequestError):
            await auth_service.register("user", None, PASSWORD)

    async def test_register_enforces_password_policy(self, auth_service):
        with pytest.raises(BadRequestError):
            await auth_service.register("user", "u@example.com", "weakpass")

    async def test_register_rejects_bad_email(self, auth_service):
        with pytest.raises(BadRequestError):
            await auth_service.register("user", "not-an-email", PASSWORD)

    async def test_register_duplicate_email_conflicts(self, auth_service, test_user):
        with pytest.raises(ConflictError) as excinfo:
            await auth_service.register("other", "TEST@example.com", PASSWORD)
        assert excinfo.value.message == "email already exists"
        assert excinfo.value.detail == {"field": "email"}


class TestLogin:
    async def test_login_with_password(self, auth_service, test_user):
        result = await auth_service.login("test@example.com", PASSWORD)
        assert result.user.id == test_user.id
        assert auth_service.authenticate(f"Bearer {result.token}").session_id == result.session.id

    async def test_login_wrong_password(self, auth_service, test_user):
        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.login("test@example.com", "WrongPassword1!")
        assert excinfo.value.message == "Invalid email or password"

    async def test_login_unknown_email(self, auth_service):
        with pytest.raises(UnauthorizedError):
            await auth_service.login("ghost@example.com", PASSWORD)

    async def test_login_requires_code_when_two_factor_enabled(
        self, auth_service, memory_store, test_user
    ):
        memory_store.set_two_factor_pending(test_user.id, pyotp.random_base32())
        memory_store.enable_two_factor(test_user.id)

        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.login("test@example.com", PASSWORD)
        assert excinfo.value.detail == {"twoFactorRequired": True}
        # No session is created before the second factor succeeds
        assert memory_store.sessions == {}

    async def test_login_with_totp_records_step_and_blocks_replay(
        self, auth_service, memory_store, test_user
    ):
        secret = pyotp.random_base32()
        memory_store.set_two_factor_pending(test_user.id, secret)
        memory_store.enable_two_factor(test_user.id)
        code = pyotp.TOTP(secret).now()

        await auth_service.login("test@example.com", PASSWORD, code)
        state = memory_store.get_two_factor_state(test_user.id)
        assert state.last_used_step is not None

        with pytest.raises(UnauthorizedError):
            await auth_service.login("test@example.com", PASSWORD, code)

    async def test_login_with_backup_code_consumes_it(
        self, auth_service, memory_store, test_user
    ):
        memory_store.set_two_factor_pending(test_user.id, pyotp.random_base32())
        memory_store.enable_two_factor(test_user.id)
        code_hash, _ = auth_service._hash_password("ABCD2345")
        memory_store.add_backup_code(test_user.id, code_hash)

        await auth_service.login("test@example.com", PASSWORD, "abcd-2345")

        assert memory_store.list_backup_codes(test_user.id, unused_only=True) == []
        actions = [e.action for e in memory_store.list_audit_logs(test_user.id)]
        assert BACKUP_CODE_USED in actions

        with pytest.raises(UnauthorizedError):
            await auth_service.login("test@example.com", PASSWORD, "ABCD2345")


class TestLogout:
    async def test_logout_deactivates_own_session(self, auth_service, memory_store, test_user):
        result = await auth_service.login("test@example.com", PASSWORD)
        ctx = auth_service.authenticate(f"Bearer {result.token}")

        assert auth_service.logout(ctx) is True
        assert memory_store.list_active_sessions(test_user.id) == []


def test_describe_client_labels():
    assert describe_client(None) == ("Unknown device", "Unknown browser")
    assert describe_client(
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Version/17.0 Mobile Safari/604.1"
    ) == ("iPhone", "Safari")
    assert describe_client(
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) Firefox/121.0"
    ) == ("Mac", "Firefox")
