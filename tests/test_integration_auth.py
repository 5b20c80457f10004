"""Integration tests for the /auth endpoints.

Covers password login and its lockout, the three one-time code flows,
password changes, logout, the current-user lookup, and the admin session
cleanup and revocation, all through the FastAPI app with the in-memory
store and counters.
"""

import threading

import pytest
from fastapi.testclient import TestClient

from tutorauth import app as app_module
from tutorauth.service.runtime import get_runtime
from tutorauth.storage.models import OtpPurpose

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def outbox(runtime):
    """Capture one-time codes instead of emailing them."""
    sent = []

    def _capture(to_email, code, purpose):
        sent.append({"to": to_email, "code": code, "purpose": purpose})
        return True

    runtime.email.send_otp = _capture
    return sent


def _create_user(runtime, email="student@example.com", username="student", role="user"):
    return runtime.store.create_user(
        email,
        username,
        password_hash=runtime.verifier.hash(PASSWORD),
        role=role,
        first_name="Test",
        last_name="Student",
        email_verified=True,
    )


class TestPasswordLogin:
    """Password login, cookies and lockout."""

    def test_login_sets_cookies_without_admin_cookie(self, client, runtime):
        """A regular user gets access and session cookies only."""
        _create_user(runtime)

        response = client.post(
            "/auth/login", json={"username": "student", "password": PASSWORD}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Login successful"
        assert data["user"]["username"] == "student"
        assert data["user"]["email"] == "student@example.com"
        assert "password_hash" not in data["user"]
        assert response.cookies.get("access_token") == data["token"]
        assert response.cookies.get("session_token") == data["session_token"]
        assert "admin_token" not in response.cookies
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_login_by_email(self, client, runtime):
        _create_user(runtime)
        response = client.post(
            "/auth/login", json={"email": "student@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200

    def test_admin_login_sets_admin_cookie_only(self, client, runtime):
        """The admin token is delivered as a cookie and never in the body."""
        _create_user(runtime, email="admin@example.com", username="admin", role="admin")

        response = client.post("/auth/login", json={"username": "admin", "password": PASSWORD})

        assert response.status_code == 200
        admin_token = response.cookies.get("admin_token")
        assert admin_token
        assert admin_token not in response.text
        assert runtime.tokens.decode(admin_token, "admin")["email"] == "admin@example.com"

    def test_failures_are_indistinguishable(self, client, runtime):
        """Unknown users and wrong passwords produce the same response."""
        _create_user(runtime)
        headers = {"X-Request-ID": "fixed-request-id"}

        unknown = client.post(
            "/auth/login", json={"username": "ghost", "password": PASSWORD}, headers=headers
        )
        wrong = client.post(
            "/auth/login", json={"username": "student", "password": "nope-nope"}, headers=headers
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        error = wrong.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "Incorrect email or password"

    def test_lockout_after_ten_failures(self, client, runtime):
        """The eleventh attempt is refused even with the right password."""
        _create_user(runtime)

        statuses = [
            client.post(
                "/auth/login", json={"username": "student", "password": "wrong-password"}
            ).status_code
            for _ in range(11)
        ]
        assert statuses == [401] * 10 + [429]

        response = client.post("/auth/login", json={"username": "student", "password": PASSWORD})
        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["message"].startswith("Too many failed login attempts. Please try again in")
        assert error["details"]["retry_after"] > 0
        assert error["details"]["max_attempts"] == 10
        assert int(response.headers["Retry-After"]) > 0
        assert "access_token" not in response.cookies

    def test_unencodable_password_is_an_ordinary_failure(self, client, runtime):
        """A lone surrogate fails like a wrong password and still counts."""
        _create_user(runtime)
        headers = {"X-Request-ID": "fixed-request-id", "Content-Type": "application/json"}

        known = client.post(
            "/auth/login",
            content='{"username": "student", "password": "\\ud800"}',
            headers=headers,
        )
        unknown = client.post(
            "/auth/login",
            content='{"username": "ghost", "password": "\\ud800"}',
            headers=headers,
        )

        assert known.status_code == unknown.status_code == 401
        assert known.json() == unknown.json()
        statuses = [
            client.post(
                "/auth/login", json={"username": "student", "password": "wrong-password"}
            ).status_code
            for _ in range(9)
        ]
        assert statuses == [401] * 8 + [429]

    def test_missing_password_rejected(self, client):
        response = client.post("/auth/login", json={"username": "student"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Username/email and password are required"

    def test_get_on_login_is_method_not_allowed(self, client):
        response = client.get("/auth/login")
        assert response.status_code == 405
        assert response.json()["status"] == "error"

    def test_session_cap_through_api(self, client, runtime):
        user = _create_user(runtime)
        for _ in range(5):
            assert (
                client.post(
                    "/auth/login", json={"username": "student", "password": PASSWORD}
                ).status_code
                == 200
            )
        assert len(runtime.store.list_sessions(user.id)) == 3

    def test_logins_do_not_use_up_verification_codes(self, client, runtime, outbox):
        """Ten sign-ins from one address leave send-otp untouched."""
        _create_user(runtime)
        for _ in range(10):
            assert (
                client.post(
                    "/auth/login", json={"username": "student", "password": PASSWORD}
                ).status_code
                == 200
            )

        response = client.post(
            "/auth/send-otp", json={"email": "student@example.com", "type": "password_reset"}
        )

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "9"


class TestOtpFlows:
    """Signup, passwordless login and password reset by emailed code."""

    def test_signup_code_refused_for_existing_email(self, client, runtime, outbox):
        _create_user(runtime)

        response = client.post(
            "/auth/send-otp", json={"email": "student@example.com", "type": "signup"}
        )

        assert response.status_code == 400
        assert "already exists" in response.json()["error"]["message"]
        assert runtime.store.count_unused_otps("student@example.com", OtpPurpose.SIGNUP) == 0
        assert outbox == []

    def test_signup_flow_creates_account_and_signs_in(self, client, runtime, outbox):
        response = client.post(
            "/auth/send-otp", json={"email": "New.Student@Example.com", "type": "signup"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "OTP sent successfully"
        assert outbox[-1]["to"] == "new.student@example.com"

        response = client.post(
            "/auth/verify-otp",
            json={
                "email": "new.student@example.com",
                "code": outbox[-1]["code"],
                "type": "signup",
                "username": "newstudent",
                "first_name": "New",
                "last_name": "Student",
                "password": PASSWORD,
            },
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Account created successfully"
        assert response.cookies.get("access_token")

        me = client.get("/auth/me")
        assert me.status_code == 200
        profile = me.json()["data"]["user"]
        assert profile["username"] == "newstudent"
        assert profile["email_verified"] is True

        login = client.post(
            "/auth/login", json={"username": "newstudent", "password": PASSWORD}
        )
        assert login.status_code == 200

    def test_signup_with_taken_username_keeps_code(self, client, runtime, outbox):
        _create_user(runtime)
        client.post("/auth/send-otp", json={"email": "other@example.com", "type": "signup"})

        response = client.post(
            "/auth/verify-otp",
            json={
                "email": "other@example.com",
                "otp": outbox[-1]["code"],
                "type": "signup",
                "username": "Student",
                "first_name": "Other",
                "last_name": "Person",
                "password": PASSWORD,
            },
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Username is already taken"
        assert runtime.store.count_unused_otps("other@example.com", OtpPurpose.SIGNUP) == 1

    def test_signup_requires_profile_fields(self, client, outbox):
        client.post("/auth/send-otp", json={"email": "other@example.com", "type": "signup"})
        response = client.post(
            "/auth/verify-otp",
            json={"email": "other@example.com", "code": outbox[-1]["code"], "type": "signup"},
        )
        assert response.status_code == 400
        assert "required for signup" in response.json()["error"]["message"]

    def test_passwordless_login(self, client, runtime, outbox):
        _create_user(runtime)
        client.post("/auth/send-otp", json={"email": "student@example.com", "type": "login"})

        response = client.post(
            "/auth/verify-otp",
            json={"email": "student@example.com", "code": outbox[-1]["code"], "type": "login"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Login successful"
        assert response.cookies.get("session_token")

    def test_login_code_for_removed_account(self, client, runtime, outbox):
        """A valid code for an account that no longer exists reads as a missing code."""
        user = _create_user(runtime)
        client.post("/auth/send-otp", json={"email": "student@example.com", "type": "login"})
        runtime.store.users.pop(user.id)

        response = client.post(
            "/auth/verify-otp",
            json={"email": "student@example.com", "code": outbox[-1]["code"], "type": "login"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == (
            "OTP not found or expired. Please request a new verification code."
        )
        assert error["details"] == {"reason": "not_found"}
        assert "access_token" not in response.cookies

    def test_slow_code_delivery_is_bounded(self, runtime, monkeypatch):
        """Sending a code waits no longer than the request timeout."""
        _create_user(runtime)
        monkeypatch.setattr(runtime.settings, "request_timeout_seconds", 0.05)
        release = threading.Event()

        def _stall(to_email, code, purpose):
            release.wait(2)
            return True

        runtime.email.send_otp = _stall
        client = TestClient(app_module.app, raise_server_exceptions=False)
        try:
            response = client.post(
                "/auth/send-otp", json={"email": "student@example.com", "type": "login"}
            )
        finally:
            release.set()

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"

    def test_send_otp_limit_per_address(self, client, runtime, outbox):
        _create_user(runtime)
        statuses = [
            client.post(
                "/auth/send-otp", json={"email": "student@example.com", "type": "login"}
            ).status_code
            for _ in range(11)
        ]
        assert statuses == [200] * 10 + [429]

    def test_wrong_code_reports_remaining_attempts(self, client, runtime, outbox):
        _create_user(runtime)
        client.post("/auth/send-otp", json={"email": "student@example.com", "type": "login"})
        wrong = "000000" if outbox[-1]["code"] != "000000" else "111111"

        response = client.post(
            "/auth/verify-otp",
            json={"email": "student@example.com", "code": wrong, "type": "login"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid OTP. 4 attempts remaining."

    def test_malformed_code_rejected(self, client):
        response = client.post(
            "/auth/verify-otp",
            json={"email": "student@example.com", "code": "12ab", "type": "login"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid OTP format"

    def test_missing_code_rejected(self, client):
        response = client.post(
            "/auth/verify-otp", json={"email": "student@example.com", "type": "login"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing required fields"

    def test_password_reset_flow(self, client, runtime, outbox):
        _create_user(runtime)
        client.post(
            "/auth/send-otp", json={"email": "student@example.com", "type": "password_reset"}
        )
        code = outbox[-1]["code"]

        verified = client.post(
            "/auth/verify-otp",
            json={"email": "student@example.com", "code": code, "type": "password_reset"},
        )
        assert verified.status_code == 200
        assert "access_token" not in verified.cookies

        reset = client.post(
            "/auth/reset-password",
            json={"email": "student@example.com", "otp": code, "new_password": "BrandNewPass1"},
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["message"] == "Password reset successfully"

        old = client.post("/auth/login", json={"username": "student", "password": PASSWORD})
        assert old.status_code == 401
        new = client.post("/auth/login", json={"username": "student", "password": "BrandNewPass1"})
        assert new.status_code == 200

        reused = client.post(
            "/auth/reset-password",
            json={"email": "student@example.com", "otp": code, "new_password": "AnotherPass1"},
        )
        assert reused.status_code == 400

    def test_reset_requires_long_password(self, client):
        response = client.post(
            "/auth/reset-password",
            json={"email": "student@example.com", "otp": "123456", "new_password": "short"},
        )
        assert response.status_code == 400
        assert (
            response.json()["error"]["message"]
            == "Password must be at least 8 characters long"
        )


class TestSessionEndpoints:
    """Logout, current user and admin cleanup."""

    def test_me_requires_token(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "No access token provided"

    def test_me_with_bearer_token(self, client, runtime):
        user = _create_user(runtime)
        token = runtime.tokens.issue_access_token(user.id, user.email, user.role)
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == user.id

    def test_me_rejects_session_token(self, client, runtime):
        user = _create_user(runtime)
        token = runtime.tokens.issue_session_token(user.id)
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"

    def test_non_ascii_token_is_unauthorized(self, client, runtime):
        user = _create_user(runtime)
        header, payload, _ = runtime.tokens.issue_access_token(
            user.id, user.email, user.role
        ).split(".")
        authorization = f"Bearer {header}.{payload}.éé".encode("latin-1")

        for path in ("/auth/me", "/auth/sessions/cleanup"):
            method = client.get if path == "/auth/me" else client.post
            response = method(path, headers={"Authorization": authorization})
            assert response.status_code == 401
            assert response.json()["error"]["message"] == "Invalid or expired token"

    def test_logout_revokes_session_and_clears_cookies(self, client, runtime):
        user = _create_user(runtime)
        login = client.post("/auth/login", json={"username": "student", "password": PASSWORD})
        session_token = login.cookies.get("session_token")
        assert runtime.store.get_session_by_token(session_token) is not None

        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out successfully"
        assert runtime.store.get_session_by_token(session_token) is None
        assert runtime.store.list_sessions(user.id) == []
        cleared = [h.lower() for h in response.headers.get_list("set-cookie")]
        assert len(cleared) == 3
        assert all("max-age=0" in header for header in cleared)

    def test_logout_without_cookies_succeeds(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 200

    def test_cleanup_requires_admin(self, client, runtime):
        user = _create_user(runtime)
        assert client.post("/auth/sessions/cleanup").status_code == 401

        access = runtime.tokens.issue_access_token(user.id, user.email, user.role)
        response = client.post(
            "/auth/sessions/cleanup", headers={"Authorization": f"Bearer {access}"}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_cleanup_with_admin_cookie(self, client, runtime):
        _create_user(runtime, email="admin@example.com", username="admin", role="admin")
        client.post("/auth/login", json={"username": "admin", "password": PASSWORD})

        response = client.post("/auth/sessions/cleanup")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Session cleanup completed"
        assert set(data["deleted"]) == {
            "expired_sessions",
            "old_sessions",
            "excess_sessions",
            "stale_otps",
        }


class TestChangePassword:
    def test_change_password_replaces_hash(self, client, runtime):
        _create_user(runtime)
        client.post("/auth/login", json={"username": "student", "password": PASSWORD})

        response = client.post(
            "/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass1"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Password changed successfully"
        stored = runtime.store.get_user_by_username("student").password_hash
        assert stored.startswith("$argon2id$")
        assert runtime.verifier.verify("BrandNewPass1", stored)
        old = client.post("/auth/login", json={"username": "student", "password": PASSWORD})
        assert old.status_code == 401

    def test_wrong_current_password(self, client, runtime):
        user = _create_user(runtime)
        token = runtime.tokens.issue_access_token(user.id, user.email, user.role)

        response = client.post(
            "/auth/change-password",
            json={"current_password": "not-my-password", "new_password": "BrandNewPass1"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Current password is incorrect"
        assert runtime.verifier.verify(PASSWORD, runtime.store.get_user(user.id).password_hash)

    @pytest.mark.parametrize(
        "body,message",
        [
            ({"new_password": "BrandNewPass1"}, "Current password and new password are required"),
            ({"current_password": PASSWORD}, "Current password and new password are required"),
            (
                {"current_password": PASSWORD, "new_password": "short"},
                "New password must be at least 8 characters long",
            ),
        ],
    )
    def test_change_password_validation(self, client, runtime, body, message):
        user = _create_user(runtime)
        token = runtime.tokens.issue_access_token(user.id, user.email, user.role)

        response = client.post(
            "/auth/change-password", json=body, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == message

    def test_change_password_requires_login(self, client):
        response = client.post(
            "/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass1"},
        )
        assert response.status_code == 401


class TestRevokeSessions:
    """Admin sign-out of every session a user holds."""

    def _admin_client(self, client, runtime):
        _create_user(runtime, email="admin@example.com", username="admin", role="admin")
        client.post("/auth/login", json={"username": "admin", "password": PASSWORD})
        return client

    def test_admin_revokes_all_sessions(self, client, runtime):
        user = _create_user(runtime)
        for _ in range(2):
            runtime.tokens.create_session(user)
        admin = self._admin_client(client, runtime)

        response = admin.post("/auth/admin/revoke-sessions", json={"user_id": user.id})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "All sessions for user student@example.com have been revoked"
        assert data["deleted_sessions"] == 2
        assert data["user"] == {"id": user.id, "email": user.email, "username": "student"}
        assert runtime.store.list_sessions(user.id) == []
        admin_user = runtime.store.get_user_by_username("admin")
        assert len(runtime.store.list_sessions(admin_user.id)) == 1

    def test_unknown_user_is_not_found(self, client, runtime):
        admin = self._admin_client(client, runtime)
        response = admin.post(
            "/auth/admin/revoke-sessions",
            json={"user_id": "00000000-0000-4000-8000-000000000000"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User not found"

    @pytest.mark.parametrize(
        "body,message",
        [({}, "User ID is required"), ({"user_id": "42"}, "Invalid user ID")],
    )
    def test_user_id_validation(self, client, runtime, body, message):
        admin = self._admin_client(client, runtime)
        response = admin.post("/auth/admin/revoke-sessions", json=body)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == message

    def test_requires_admin(self, client, runtime):
        user = _create_user(runtime)
        assert (
            client.post("/auth/admin/revoke-sessions", json={"user_id": user.id}).status_code
            == 401
        )

        access = runtime.tokens.issue_access_token(user.id, user.email, user.role)
        response = client.post(
            "/auth/admin/revoke-sessions",
            json={"user_id": user.id},
            headers={"Authorization": f"Bearer {access}"},
        )
        assert response.status_code == 403


class TestHealth:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["type"] == "MemoryCounterStore"
        assert response.headers["X-Request-ID"]
