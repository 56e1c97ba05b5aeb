"""
tests/test_web_auth.py -- Integration tests for the login flow and access gates.

These tests run through the real ASGI stack (session middleware, exception
handlers, templates) using the web_client fixture (follow_redirects=False),
asserting on status codes and Location headers directly.

Coverage:
  - Anonymous requests -> 302 /login, with the destination remembered
  - Login success / failure / deactivated / rate limited
  - Session identifier changes at login (fixation defense)
  - A late request with a rotated-away cookie sends no Set-Cookie
  - User-role request for an admin page -> 403, not a redirect
  - POST without csrf_token -> 403 and no state change
  - Idle expiry advisory on the next login page
  - Logout
  - Cookie attributes
  - JSON identity endpoint
"""

from __future__ import annotations

from conftest import csrf_from, login, make_user, session_cookie

from auth.models import Role
from core.config import get_settings
from web.routes import _safe_next


class TestAnonymousAccess:
    def test_protected_page_redirects_to_login(self, web_client) -> None:
        """GET /hours with no session must redirect 302 to /login."""
        resp = web_client.get("/hours")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_root_redirects_to_login(self, web_client) -> None:
        """GET / anonymous has no landing page of its own -- straight to /login."""
        resp = web_client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_login_page_renders_with_csrf_field(self, web_client) -> None:
        """The login form carries a 64-char csrf_token and is never cached."""
        resp = web_client.get("/login")
        assert resp.status_code == 200
        assert len(csrf_from(resp.text)) == 64
        assert resp.headers["cache-control"] == "no-store"

    def test_session_cookie_attributes(self, web_client) -> None:
        """The session cookie is HttpOnly, SameSite=Lax and scoped to the whole site."""
        resp = web_client.get("/login")
        cookie = resp.headers["set-cookie"].lower()
        assert cookie.startswith(get_settings().session_cookie_name + "=")
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "path=/" in cookie


class TestLogin:
    def test_user_lands_on_hours(self, web_client, auth) -> None:
        """A User-role login redirects 303 to /hours, which then renders."""
        make_user(auth, "user@x.com")
        resp = login(web_client, "user@x.com", "correct-horse")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/hours"
        assert web_client.get("/hours").status_code == 200

    def test_admin_lands_on_admin(self, web_client, auth) -> None:
        """An Admin login redirects 303 to /admin."""
        make_user(auth, "admin@x.com", role=Role.ADMIN)
        resp = login(web_client, "admin@x.com", "correct-horse")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/admin"

    def test_returns_to_requested_page_after_login(self, web_client, auth) -> None:
        """The page that bounced an anonymous user to /login is where login sends them back, query included."""
        make_user(auth, "admin@x.com", role=Role.ADMIN)
        assert web_client.get("/admin/users?page=2").status_code == 302

        resp = login(web_client, "admin@x.com", "correct-horse")

        assert resp.headers["location"] == "/admin/users?page=2"

    def test_login_page_redirects_when_logged_in(self, web_client, auth) -> None:
        """GET /login with a live session goes to the role's landing page instead of the form."""
        make_user(auth, "user@x.com")
        login(web_client, "user@x.com", "correct-horse")
        resp = web_client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/hours"

    def test_wrong_password_rerenders_form(self, web_client, auth) -> None:
        """A bad password is a 401 re-render: email kept, password dropped, no session."""
        make_user(auth, "user@x.com")
        resp = login(web_client, "user@x.com", "not-my-password")

        assert resp.status_code == 401
        assert "Invalid email or password" in resp.text
        assert 'value="user@x.com"' in resp.text
        assert "not-my-password" not in resp.text
        assert web_client.get("/hours").status_code == 302

    def test_unknown_email_gets_same_message(self, web_client) -> None:
        """Unknown accounts are indistinguishable from wrong passwords."""
        resp = login(web_client, "ghost@x.com", "whatever-password")
        assert resp.status_code == 401
        assert "Invalid email or password" in resp.text

    def test_empty_fields_rejected(self, web_client) -> None:
        resp = login(web_client, "", "")
        assert resp.status_code == 400

    def test_deactivated_account(self, web_client, auth) -> None:
        """Correct credentials for a deactivated account get a 403 with an explicit message."""
        make_user(auth, "gone@x.com", is_active=False)
        resp = login(web_client, "gone@x.com", "correct-horse")
        assert resp.status_code == 403
        assert "Your account has been deactivated" in resp.text

    def test_rate_limited_after_five_failures(self, web_client, auth) -> None:
        """The sixth attempt inside the window is refused with 429 and Retry-After, even with the right password."""
        make_user(auth, "user@x.com")
        for _ in range(5):
            assert login(web_client, "user@x.com", "wrong-password").status_code == 401

        resp = login(web_client, "user@x.com", "correct-horse")

        assert resp.status_code == 429
        assert int(resp.headers["retry-after"]) > 0
        assert "Too many failed login attempts" in resp.text

    def test_session_identifier_changes_at_login(self, web_client, auth) -> None:
        """Login issues a new identifier, and the pre-login cookie grants nothing afterwards."""
        make_user(auth, "user@x.com")
        page = web_client.get("/login")
        pre_login = session_cookie(web_client)

        web_client.post(
            "/login",
            data={"email": "user@x.com", "password": "correct-horse", "csrf_token": csrf_from(page.text)},
        )
        post_login = session_cookie(web_client)

        assert post_login != pre_login
        web_client.cookies.clear()
        web_client.cookies.set(get_settings().session_cookie_name, pre_login)
        assert web_client.get("/hours").status_code == 302

    def test_rotated_away_cookie_sets_no_cookie(self, web_client, auth) -> None:
        """A tab still sending the pre-login cookie must not overwrite the logged-in cookie.

        Its response is anonymous but carries no Set-Cookie, so the browser
        keeps the session the login issued.
        """
        make_user(auth, "user@x.com")
        page = web_client.get("/login")
        pre_login = session_cookie(web_client)
        web_client.post(
            "/login",
            data={"email": "user@x.com", "password": "correct-horse", "csrf_token": csrf_from(page.text)},
        )
        post_login = session_cookie(web_client)

        web_client.cookies.clear()
        web_client.cookies.set(get_settings().session_cookie_name, pre_login)
        resp = web_client.get("/hours")

        assert resp.status_code == 302
        assert "set-cookie" not in resp.headers
        web_client.cookies.clear()
        web_client.cookies.set(get_settings().session_cookie_name, post_login)
        assert web_client.get("/hours").status_code == 200


class TestCsrf:
    def test_login_without_token_is_rejected(self, web_client, auth) -> None:
        """POST /login without csrf_token is a 403 before credentials are even checked."""
        make_user(auth, "user@x.com")
        web_client.get("/login")

        resp = web_client.post("/login", data={"email": "user@x.com", "password": "correct-horse"})

        assert resp.status_code == 403
        assert "Invalid form submission" in resp.text
        assert web_client.get("/hours").status_code == 302
        assert auth.attempts.recent() == []

    def test_admin_post_without_token_changes_nothing(self, web_client, auth) -> None:
        """An admin write without csrf_token is refused and creates no user."""
        make_user(auth, "admin@x.com", role=Role.ADMIN)
        login(web_client, "admin@x.com", "correct-horse")

        resp = web_client.post(
            "/admin/users",
            data={"email": "new@x.com", "role": "User", "password": "long-enough-pw"},
        )

        assert resp.status_code == 403
        assert auth.users.get_by_email("new@x.com") is None


class TestRoles:
    def test_user_gets_403_on_admin_page(self, web_client, auth) -> None:
        """A logged-in User asking for /admin gets a 403 page, not a redirect to /login."""
        make_user(auth, "user@x.com")
        login(web_client, "user@x.com", "correct-horse")

        resp = web_client.get("/admin")

        assert resp.status_code == 403
        assert "location" not in resp.headers
        assert "You do not have permission" in resp.text

    def test_forbidden_page_shows_signed_in_user(self, web_client, auth) -> None:
        """The 403 page renders through the layout, which resolves the current user for the nav bar."""
        make_user(auth, "user@x.com", first_name="Ada")
        login(web_client, "user@x.com", "correct-horse")

        resp = web_client.get("/admin/users")

        assert resp.status_code == 403
        assert "Ada" in resp.text
        assert "Log out" in resp.text

    def test_admin_page_lists_login_attempts(self, web_client, auth) -> None:
        """The admin dashboard shows recent login attempts."""
        make_user(auth, "admin@x.com", role=Role.ADMIN)
        login(web_client, "admin@x.com", "correct-horse")

        resp = web_client.get("/admin")

        assert resp.status_code == 200
        assert "admin@x.com" in resp.text

    def test_root_redirects_by_role(self, web_client, auth) -> None:
        """GET / for a logged-in User lands on /hours."""
        make_user(auth, "user@x.com")
        login(web_client, "user@x.com", "correct-horse")
        resp = web_client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/hours"


class TestExpiryAndLogout:
    def test_idle_session_expires_with_message(self, web_client, auth, clock) -> None:
        """After 24h idle the next request goes to /login, and the login page explains why."""
        make_user(auth, "user@x.com")
        login(web_client, "user@x.com", "correct-horse")

        clock.advance(24 * 60 * 60 + 1)
        resp = web_client.get("/hours")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

        page = web_client.get("/login")
        assert "Your session has expired. Please log in again." in page.text

    def test_logout_ends_session(self, web_client, auth) -> None:
        """GET /logout replaces the cookie and the old session no longer opens protected pages."""
        make_user(auth, "user@x.com")
        login(web_client, "user@x.com", "correct-horse")
        before = session_cookie(web_client)

        resp = web_client.get("/logout")

        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        assert session_cookie(web_client) != before
        assert web_client.get("/hours").status_code == 302

    def test_logout_via_post(self, web_client, auth) -> None:
        """POST /logout behaves like GET /logout."""
        make_user(auth, "user@x.com")
        login(web_client, "user@x.com", "correct-horse")
        assert web_client.post("/logout").status_code == 302
        assert web_client.get("/hours").status_code == 302


class TestApiIdentity:
    def test_me_requires_login(self, web_client) -> None:
        """Under /api/ an anonymous request gets a JSON 401 envelope, not a redirect."""
        resp = web_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "not_logged_in"

    def test_me_returns_identity(self, web_client, auth) -> None:
        """GET /api/v1/auth/me reports the session's user."""
        user = make_user(auth, "user@x.com", first_name="Ada")
        login(web_client, "user@x.com", "correct-horse")

        data = web_client.get("/api/v1/auth/me").json()

        assert data["user_id"] == user.id
        assert data["email"] == "user@x.com"
        assert data["first_name"] == "Ada"
        assert data["role"] == "User"


class TestSafeNext:
    def test_relative_path_accepted(self) -> None:
        """Same-site paths, query included, pass through unchanged."""
        assert _safe_next("/hours?week=3", "/") == "/hours?week=3"

    def test_absolute_and_protocol_relative_rejected(self) -> None:
        """Anything that could leave the site falls back to the default landing page."""
        assert _safe_next("https://evil.example", "/hours") == "/hours"
        assert _safe_next("//evil.example", "/hours") == "/hours"
        assert _safe_next("/\\evil.example", "/hours") == "/hours"
        assert _safe_next(None, "/admin") == "/admin"
