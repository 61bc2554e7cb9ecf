import importlib.util
from pathlib import Path

import pytest

from authcentral.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password,ok",
    [
        ("Sh0rt!", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-123", True),
        ("MixedCaseLetters!", True),
    ],
)
def test_validate_password(bootstrap, password, ok):
    assert bootstrap.validate_password(password) is ok


async def test_creates_then_reports_existing_admin(bootstrap):
    created = await bootstrap.bootstrap_admin("root@x.com", "Sup3r-Secret-Pass")
    assert created["status"] == "created"
    assert get_runtime().store.resolve_access(created["user_id"]).roles == ["admin", "user"]

    again = await bootstrap.bootstrap_admin("root@x.com", "Sup3r-Secret-Pass")
    assert again == {"user_id": created["user_id"], "email": "root@x.com", "status": "already_admin"}


async def test_promotes_existing_user(bootstrap):
    runtime = get_runtime()
    user = await runtime.auth.register("ops@x.com", "Secret123!")

    preview = await bootstrap.bootstrap_admin("ops@x.com", "unused", dry_run=True)
    assert preview["status"] == "dry_run"
    assert "admin" not in runtime.store.resolve_access(user.id).roles

    promoted = await bootstrap.bootstrap_admin("ops@x.com", "unused")
    assert promoted["status"] == "promoted"
    assert "admin" in runtime.store.resolve_access(user.id).roles


@pytest.mark.parametrize(
    "argv",
    [
        ["--email", "root@x.com"],
        ["--email", "root@x.com", "--password", "weak"],
        ["--email", "root@x.com", "--password", "Sup3r-Secret-Pass"],
    ],
)
def test_main_rejects_incomplete_invocations(bootstrap, monkeypatch, argv):
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr("sys.argv", ["bootstrap_admin.py", *argv])
    with pytest.raises(SystemExit) as exc_info:
        bootstrap.main()
    assert exc_info.value.code == 2
