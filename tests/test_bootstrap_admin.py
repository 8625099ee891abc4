import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

import bootstrap_admin  # noqa: E402

from sessionward.service.passwords import PasswordHasher  # noqa: E402
from sessionward.storage.memory import MemoryStore  # noqa: E402
from sessionward.storage.models import Role  # noqa: E402

STRONG = "Sup3r-Secret-Pass"


@pytest.mark.parametrize(
    "password,ok",
    [
        ("short1!", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-123", True),
        (STRONG, True),
    ],
)
def test_validate_password(password, ok):
    assert bootstrap_admin.validate_password(password) is ok


def test_creates_verified_admin(tmp_path):
    code = bootstrap_admin.main(
        ["--email", "Root@Example.com", "--password", STRONG, "--state-dir", str(tmp_path)]
    )

    assert code == 0
    user = MemoryStore(fs_root=str(tmp_path)).find_user_by_email("root@example.com")
    assert user.role == Role.ADMIN
    assert user.email_verified
    assert PasswordHasher().verify(STRONG, user.password_hash)


def test_promotes_existing_user_without_touching_password(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user(
        {"id": "u1", "name": "Ada", "email": "ada@example.com", "password_hash": "keep"}
    )

    result = bootstrap_admin.bootstrap_admin(
        store, PasswordHasher(), email="ada@example.com", name="Ada", password=""
    )

    assert result["status"] == "promoted"
    reloaded = MemoryStore(fs_root=str(tmp_path)).find_user_by_id("u1")
    assert reloaded.role == Role.ADMIN
    assert reloaded.password_hash == "keep"


def test_already_admin_and_dry_run(tmp_path):
    store = MemoryStore()
    hasher = PasswordHasher()

    dry = bootstrap_admin.bootstrap_admin(
        store, hasher, email="a@example.com", name="A", password=STRONG, dry_run=True
    )
    created = bootstrap_admin.bootstrap_admin(
        store, hasher, email="a@example.com", name="A", password=STRONG
    )
    again = bootstrap_admin.bootstrap_admin(
        store, hasher, email="a@example.com", name="A", password=STRONG
    )

    assert dry["status"] == "dry_run"
    assert created["status"] == "created"
    assert again["status"] == "already_admin"
    assert store.count_users() == 1


def test_requires_state_dir(monkeypatch, capsys):
    monkeypatch.delenv("STATE_DIR", raising=False)

    assert bootstrap_admin.main(["--email", "a@example.com", "--password", STRONG]) == 1
    assert "STATE_DIR" in capsys.readouterr().out


def test_rejects_weak_password(tmp_path):
    assert (
        bootstrap_admin.main(
            ["--email", "a@example.com", "--password", "weak", "--state-dir", str(tmp_path)]
        )
        == 1
    )
