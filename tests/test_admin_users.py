"""
tests/test_admin_users.py -- Integration tests for user management and first-run setup.

Covers:
  - Admin creates users (validation, duplicate email -> 409)
  - Activate / deactivate, including the self-deactivation and last-admin
    guards, and session revocation on deactivation
  - First-run setup redirect, wizard and its one-shot behavior
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from conftest import _patch_lifespan, csrf_from, login, make_user
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.models import Role


@pytest.fixture
def admin_client(web_client, auth):
    admin = make_user(auth, "admin@x.com", role=Role.ADMIN)
    login(web_client, "admin@x.com", "correct-horse")
    return web_client, admin


def _token(client: TestClient) -> str:
    return csrf_from(client.get("/admin/users").text)


class TestCreateUser:
    def test_users_page_lists_accounts(self, admin_client) -> None:
        client, _ = admin_client
        resp = client.get("/admin/users")
        assert resp.status_code == 200
        assert "admin@x.com" in resp.text

    def test_create_user(self, admin_client, auth) -> None:
        client, _ = admin_client
        resp = client.post(
            "/admin/users",
            data={
                "email": "New@X.com",
                "first_name": "Grace",
                "last_name": "Hopper",
                "role": "User",
                "password": "long-enough-pw",
                "csrf_token": _token(client),
            },
        )
        assert resp.status_code == 303
        created = auth.users.get_by_email("new@x.com")
        assert created.role is Role.USER
        assert created.display_name == "Grace Hopper"

    def test_duplicate_email_conflicts(self, admin_client) -> None:
        client, _ = admin_client
        resp = client.post(
            "/admin/users",
            data={"email": "admin@x.com", "role": "User", "password": "long-enough-pw", "csrf_token": _token(client)},
        )
        assert resp.status_code == 409
        assert "already exists" in resp.text

    def test_short_password_rejected(self, admin_client, auth) -> None:
        client, _ = admin_client
        resp = client.post(
            "/admin/users",
            data={"email": "new@x.com", "role": "User", "password": "short", "csrf_token": _token(client)},
        )
        assert resp.status_code == 400
        assert auth.users.get_by_email("new@x.com") is None

    def test_unknown_role_rejected(self, admin_client) -> None:
        client, _ = admin_client
        resp = client.post(
            "/admin/users",
            data={"email": "new@x.com", "role": "Root", "password": "long-enough-pw", "csrf_token": _token(client)},
        )
        assert resp.status_code == 400


class TestActivation:
    def test_deactivation_revokes_sessions(self, admin_client, auth) -> None:
        client, _ = admin_client
        target = make_user(auth, "user@x.com")
        ctx = auth.sessions.init(None)
        auth.sessions.establish(ctx, target)

        resp = client.post(f"/admin/users/{target.id}/active", data={"active": "0", "csrf_token": _token(client)})

        assert resp.status_code == 303
        assert not auth.users.get_by_id(target.id).is_active
        assert auth.sessions.store.get(ctx.session_id) is None

    def test_reactivation(self, admin_client, auth) -> None:
        client, _ = admin_client
        target = make_user(auth, "user@x.com", is_active=False)

        resp = client.post(f"/admin/users/{target.id}/active", data={"active": "1", "csrf_token": _token(client)})

        assert resp.status_code == 303
        assert auth.users.get_by_id(target.id).is_active

    def test_cannot_deactivate_self(self, admin_client, auth) -> None:
        client, admin = admin_client
        resp = client.post(f"/admin/users/{admin.id}/active", data={"active": "0", "csrf_token": _token(client)})
        assert resp.status_code == 400
        assert auth.users.get_by_id(admin.id).is_active

    def test_can_deactivate_another_admin(self, admin_client, auth) -> None:
        client, _ = admin_client
        other = make_user(auth, "other-admin@x.com", role=Role.ADMIN)

        resp = client.post(f"/admin/users/{other.id}/active", data={"active": "0", "csrf_token": _token(client)})

        assert resp.status_code == 303
        assert auth.users.count_active_admins() == 1

    def test_cannot_deactivate_last_active_admin(self, admin_client, auth) -> None:
        client, admin = admin_client
        other = make_user(auth, "other-admin@x.com", role=Role.ADMIN)
        token = _token(client)
        # The acting admin's own row was deactivated elsewhere; their session
        # still carries the cached snapshot.
        auth.users.update_user(admin.id, is_active=False)

        resp = client.post(f"/admin/users/{other.id}/active", data={"active": "0", "csrf_token": token})

        assert resp.status_code == 400
        assert "last active admin" in resp.text
        assert auth.users.get_by_id(other.id).is_active

    def test_unknown_user_is_404(self, admin_client) -> None:
        client, _ = admin_client
        resp = client.post("/admin/users/9999/active", data={"active": "0", "csrf_token": _token(client)})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


@pytest.fixture
def setup_client(auth, engine) -> Generator[TestClient, None, None]:
    app.router.lifespan_context = _patch_lifespan(auth, engine, setup_required=True)
    limiter.enabled = False
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
    limiter.enabled = True


class TestSetup:
    def _submit(self, client: TestClient, password: str = "long-enough-pw", confirm: str | None = None):
        token = csrf_from(client.get("/setup").text)
        return client.post(
            "/setup",
            data={
                "email": "first@x.com",
                "first_name": "First",
                "last_name": "Admin",
                "password": password,
                "confirm_password": password if confirm is None else confirm,
                "csrf_token": token,
            },
        )

    def test_everything_redirects_to_setup(self, setup_client) -> None:
        for path in ("/", "/login", "/hours"):
            resp = setup_client.get(path)
            assert resp.status_code == 302
            assert resp.headers["location"] == "/setup"

    def test_health_is_exempt(self, setup_client) -> None:
        assert setup_client.get("/api/v1/health").status_code == 200

    def test_setup_creates_first_admin(self, setup_client, auth) -> None:
        resp = self._submit(setup_client)

        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"
        admin = auth.users.get_by_email("first@x.com")
        assert admin.is_admin
        assert setup_client.get("/setup").status_code == 404
        assert setup_client.get("/login").status_code == 200

    def test_password_mismatch(self, setup_client, auth) -> None:
        resp = self._submit(setup_client, confirm="something-else")
        assert resp.status_code == 400
        assert "Passwords do not match" in resp.text
        assert not auth.users.has_users()

    def test_setup_requires_csrf(self, setup_client, auth) -> None:
        setup_client.get("/setup")
        resp = setup_client.post(
            "/setup",
            data={"email": "first@x.com", "password": "long-enough-pw", "confirm_password": "long-enough-pw"},
        )
        assert resp.status_code == 403
        assert not auth.users.has_users()
