"""
Tests for CLI commands.
"""

from datetime import timedelta

import pytest
from typer.testing import CliRunner

from anonchat.cli import app
from anonchat.models import Admin
from anonchat.utils import utcnow, verify_password

# Disable Rich formatting in tests using NO_COLOR environment variable
runner = CliRunner(env={"NO_COLOR": "1", "TERM": "dumb"})


@pytest.fixture(autouse=True)
def keep_test_logging(monkeypatch):
    """Commands reconfigure logging; keep the handlers pytest already has."""
    monkeypatch.setattr("anonchat.cli.setup_logging", lambda *args, **kwargs: None)


class TestCreateAdminCommand:
    """Tests for create-admin command."""

    def test_requires_username(self):
        result = runner.invoke(app, ["create-admin"])

        assert result.exit_code != 0

    def test_creates_account(self, db):
        result = runner.invoke(app, ["create-admin", "bob", "--password", "a-long-enough-password"])

        assert result.exit_code == 0
        assert "created" in result.stdout

        admin = db.query(Admin).filter(Admin.username == "bob").one()
        assert verify_password("a-long-enough-password", admin.password_hash)
        assert admin.failed_login_attempts == 0

    def test_rejects_short_password(self, db):
        result = runner.invoke(app, ["create-admin", "bob", "--password", "short"])

        assert result.exit_code == 1
        assert "at least" in result.stdout
        assert db.query(Admin).count() == 0

    def test_rejects_duplicate(self, db, admin_account):
        result = runner.invoke(app, ["create-admin", admin_account.username, "--password", "a-long-enough-password"])

        assert result.exit_code == 1
        assert "already exists" in result.stdout


class TestUnlockAdminCommand:
    """Tests for unlock-admin command."""

    def test_unlocks_account(self, db, admin_account):
        admin_account.failed_login_attempts = 7
        admin_account.locked_until = utcnow() + timedelta(hours=1)
        db.commit()

        result = runner.invoke(app, ["unlock-admin", admin_account.username])

        assert result.exit_code == 0
        db.expire_all()
        account = db.get(Admin, admin_account.id)
        assert account.failed_login_attempts == 0
        assert account.locked_until is None

    def test_unknown_account(self, db):
        result = runner.invoke(app, ["unlock-admin", "nobody"])

        assert result.exit_code == 1
        assert "not found" in result.stdout
