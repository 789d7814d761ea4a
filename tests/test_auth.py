"""
Tests for POST /api/admin-login.

Tests cover:
- Successful login and session regeneration
- Generic failures for unknown users and wrong passwords
- Account lockout, including the correct password while locked
- Per-IP rate limiting
- CSRF purpose binding
- Admin sessions staying bound to one account
"""

import asyncio
import time
from datetime import timedelta

from anonchat.config import settings
from anonchat.models import Admin, RateLimit, SecurityLog
from anonchat.storage import create_admin
from anonchat.utils import hash_password, utcnow, verify_password

from conftest import ADMIN_PASSWORD, ADMIN_USER, csrf, login


class TestLoginSuccess:
    """Test successful admin logins."""

    def test_login_returns_redirect(self, client, admin_account):
        response = login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["error"] is None
        assert body["data"] == {"redirect": settings.ADMIN_REDIRECT}

    def test_login_regenerates_session_id(self, client, admin_account):
        csrf(client, "admin-login")
        before = client.cookies.get(settings.SESSION_COOKIE_NAME)

        response = login(client)

        assert response.status_code == 200
        after = client.cookies.get(settings.SESSION_COOKIE_NAME)
        assert before and after
        assert before != after

    def test_session_cookie_is_http_only_and_same_site(self, client, admin_account):
        response = login(client)

        cookie_header = response.headers["set-cookie"].lower()
        assert "httponly" in cookie_header
        assert "samesite=strict" in cookie_header

    def test_session_reports_admin_claim(self, client, admin_account):
        login(client)

        data = client.get("/api/session").json()["data"]
        assert data["role"] == "admin"
        assert data["username"] == ADMIN_USER
        assert data["conversation_id"] is None

    def test_success_resets_counter_and_stamps_last_login(self, client, db, admin_account):
        login(client, password="wrong-password-1")
        login(client, password="wrong-password-2")

        response = login(client)
        assert response.status_code == 200

        db.expire_all()
        account = db.get(Admin, admin_account.id)
        assert account.failed_login_attempts == 0
        assert account.locked_until is None
        assert account.last_login is not None


class TestLoginFailures:
    """Test credential failures."""

    def test_unknown_user_is_generic(self, client, admin_account):
        response = login(client, user="mallory", password="whatever-password")

        assert response.status_code == 401
        assert response.json() == {"success": False, "data": None, "error": "Invalid credentials"}

    def test_wrong_password_reports_attempts(self, client, admin_account):
        response = login(client, password="not-the-password")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error.startswith("Invalid credentials")
        assert f"1/{settings.LOCKOUT_MAX_ATTEMPTS}" in error
        assert f"remaining: {settings.LOCKOUT_MAX_ATTEMPTS - 1}" in error

    def test_missing_fields(self, client, admin_account):
        token = csrf(client, "admin-login")
        response = client.post("/api/admin-login", json={"user": "", "password": "", "csrf": token})

        assert response.status_code == 422
        assert response.json()["success"] is False

    def test_failed_login_does_not_authenticate(self, client, admin_account):
        login(client, password="not-the-password")

        data = client.get("/api/session").json()["data"]
        assert data["role"] == "none"

    def test_invalid_credentials_latency_floor(self, client, admin_account, monkeypatch):
        monkeypatch.setattr(settings, "FAILED_LOGIN_DELAY_MS", 150)
        token = csrf(client, "admin-login")

        started = time.monotonic()
        response = client.post(
            "/api/admin-login",
            json={"user": "nobody", "password": "whatever-password", "csrf": token},
        )
        elapsed = time.monotonic() - started

        assert response.status_code == 401
        assert elapsed >= 0.15


class TestLockout:
    """Test per-account lockout."""

    def test_locks_after_max_attempts(self, client, admin_account):
        for i in range(settings.LOCKOUT_MAX_ATTEMPTS - 1):
            assert login(client, password=f"bad-{i}").status_code == 401

        response = login(client, password="bad-final")

        assert response.status_code == 429
        assert f"{settings.LOCKOUT_DURATION_MINUTES} min" in response.json()["error"]

    def test_correct_password_rejected_while_locked(self, client, db, admin_account):
        for i in range(settings.LOCKOUT_MAX_ATTEMPTS):
            login(client, password=f"bad-{i}")

        response = login(client, password=ADMIN_PASSWORD)

        assert response.status_code == 429
        assert response.json()["error"] == "Account temporarily locked"
        assert client.get("/api/session").json()["data"]["role"] == "none"

        db.expire_all()
        account = db.get(Admin, admin_account.id)
        # Locked attempts are not counted against the account
        assert account.failed_login_attempts == settings.LOCKOUT_MAX_ATTEMPTS

    def test_login_allowed_after_lock_expires(self, client, db, admin_account):
        for i in range(settings.LOCKOUT_MAX_ATTEMPTS):
            login(client, password=f"bad-{i}")

        account = db.get(Admin, admin_account.id)
        account.locked_until = utcnow() - timedelta(seconds=1)
        db.commit()

        response = login(client)
        assert response.status_code == 200

    def test_failure_after_expiry_relocks_longer(self, client, db, admin_account):
        for i in range(settings.LOCKOUT_MAX_ATTEMPTS):
            login(client, password=f"bad-{i}")

        account = db.get(Admin, admin_account.id)
        account.locked_until = utcnow() - timedelta(seconds=1)
        db.commit()

        response = login(client, password="still-wrong")
        assert response.status_code == 429

        db.expire_all()
        account = db.get(Admin, admin_account.id)
        remaining = account.locked_until - utcnow()
        assert remaining > timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES)


class TestRateLimit:
    """Test per-IP rate limiting of login attempts."""

    def test_rejects_beyond_max_attempts(self, client, admin_account, monkeypatch):
        monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_ATTEMPTS", 3)

        for i in range(3):
            assert login(client, user="nobody", password=f"pw-{i}").status_code == 401

        response = login(client)

        assert response.status_code == 429
        assert int(response.headers["retry-after"]) >= 1
        assert "Too many attempts" in response.json()["error"]
        assert client.get("/api/session").json()["data"]["role"] == "none"

    def test_rate_limit_does_not_touch_account(self, client, db, admin_account, monkeypatch):
        monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_ATTEMPTS", 1)

        login(client, password="bad-1")
        login(client, password="bad-2")

        db.expire_all()
        account = db.get(Admin, admin_account.id)
        assert account.failed_login_attempts == 1

    def test_counter_resets_after_window(self, client, db, admin_account, monkeypatch):
        monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_ATTEMPTS", 1)
        login(client, user="nobody", password="pw")
        assert login(client).status_code == 429

        bucket = db.query(RateLimit).one()
        bucket.window_start = utcnow() - timedelta(seconds=settings.LOGIN_RATE_LIMIT_WINDOW + 1)
        db.commit()

        assert login(client).status_code == 200

        db.expire_all()
        assert db.query(RateLimit).one().attempt_count == 1


class TestLoginCsrf:
    """Test CSRF checks on the login form."""

    def test_missing_token(self, client, admin_account):
        csrf(client, "admin-login")
        response = client.post(
            "/api/admin-login",
            json={"user": ADMIN_USER, "password": ADMIN_PASSWORD},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "Unauthorized"

    def test_token_for_other_purpose(self, client, admin_account):
        token = csrf(client, "chat")
        response = client.post(
            "/api/admin-login",
            json={"user": ADMIN_USER, "password": ADMIN_PASSWORD, "csrf": token},
        )

        assert response.status_code == 403

    def test_csrf_failure_is_audited(self, client, db, admin_account):
        csrf(client, "admin-login")
        client.post("/api/admin-login", json={"user": ADMIN_USER, "password": "x", "csrf": "forged"})

        events = db.query(SecurityLog).filter(SecurityLog.event_type == "suspicious_activity").all()
        assert len(events) == 1
        assert events[0].details == "admin_csrf_invalid"

    def test_participant_cannot_become_admin(self, participant_client, admin_account):
        response = login(participant_client)

        assert response.status_code == 403
        data = participant_client.get("/api/session").json()["data"]
        assert data["role"] == "participant"


class TestAdminClaimBinding:
    """Test that an admin session stays bound to one account."""

    OTHER_USER = "bob"
    OTHER_PASSWORD = "staple-tray-orbit"

    def other_admin(self, db):
        return create_admin(db, self.OTHER_USER, hash_password(self.OTHER_PASSWORD))

    def test_same_admin_may_log_in_again(self, client, admin_account):
        assert login(client).status_code == 200
        assert login(client).status_code == 200

    def test_second_account_refused_without_side_effects(self, client, db, admin_account):
        other = self.other_admin(db)
        login(client)

        response = login(client, user=self.OTHER_USER, password=self.OTHER_PASSWORD)

        assert response.status_code == 403
        db.expire_all()
        account = db.get(Admin, other.id)
        assert account.last_login is None
        assert account.failed_login_attempts == 0
        assert client.get("/api/session").json()["data"]["username"] == ADMIN_USER

    def test_wrong_password_for_second_account_not_counted(self, client, db, admin_account):
        other = self.other_admin(db)
        login(client)

        response = login(client, user=self.OTHER_USER, password="not-the-password")

        assert response.status_code == 403
        db.expire_all()
        assert db.get(Admin, other.id).failed_login_attempts == 0

    def test_switch_attempt_audited(self, client, db, admin_account):
        self.other_admin(db)
        login(client)

        login(client, user=self.OTHER_USER, password=self.OTHER_PASSWORD)

        details = [e.details for e in db.query(SecurityLog).filter(SecurityLog.event_type == "suspicious_activity")]
        assert details == ["claim_switch_attempt"]


class TestPasswordHashingOffLoop:
    """Test that scrypt runs outside the event loop."""

    def test_verify_runs_in_worker_thread(self, client, admin_account, monkeypatch):
        seen = []

        def recording_verify(password, hashed):
            try:
                asyncio.get_running_loop()
                seen.append("event_loop")
            except RuntimeError:
                seen.append("worker_thread")
            return verify_password(password, hashed)

        monkeypatch.setattr("anonchat.auth.verify_password", recording_verify)

        assert login(client).status_code == 200
        assert seen == ["worker_thread"]
