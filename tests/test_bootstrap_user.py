import importlib.util
from pathlib import Path

from rollt.service.runtime import get_runtime

PASSWORD = "Bootstrap#Pass1"

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_user.py"
_spec = importlib.util.spec_from_file_location("bootstrap_user", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap)


async def test_creates_user_without_session():
    result = await bootstrap.bootstrap_user("carol", "carol@example.com", PASSWORD)

    assert result["status"] == "created"
    assert "token" not in result
    runtime = get_runtime()
    assert runtime.store.list_active_sessions(result["user_id"]) == []
    assert await runtime.auth.verify_password(result["user_id"], PASSWORD)


async def test_existing_email_is_left_alone():
    first = await bootstrap.bootstrap_user("carol", "carol@example.com", PASSWORD)
    second = await bootstrap.bootstrap_user("carol2", "carol@example.com", "Other#Pass22")

    assert second == {"user_id": first["user_id"], "email": "carol@example.com", "status": "exists"}
    assert await get_runtime().auth.verify_password(first["user_id"], PASSWORD)


async def test_dry_run_creates_nothing():
    result = await bootstrap.bootstrap_user("dave", "dave@example.com", PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("dave@example.com") is None
