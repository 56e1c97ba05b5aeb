"""
web/routes.py -- Jinja2 template routes for the PulseHours web UI.

These routes serve server-rendered HTML. They share app.state.auth with the
JSON API. Access control and CSRF go exclusively through auth.dependencies:
require_login / require_admin / csrf_protect / csrf_token / current_user.

Handlers that verify passwords or touch the database are plain `def`, so
FastAPI runs them in its threadpool and bcrypt never blocks the event loop.

Routes:
  GET  /                              -- redirect to the role landing page (auth required)
  GET  /login                         -- login form
  POST /login                         -- handle password login
  GET  /logout, POST /logout          -- destroy session, redirect /login
  GET  /hours                         -- user landing page (auth required)
  GET  /admin                         -- admin landing page (admin required)
  GET  /admin/users                   -- user list + create form (admin required)
  POST /admin/users                   -- create a user (admin + CSRF)
  POST /admin/users/{user_id}/active  -- activate / deactivate (admin + CSRF)
  GET  /setup                         -- first-run wizard
  POST /setup                         -- create first admin (CSRF)

auth_error_page() is the AuthError exception handler for the assembled app;
asgi.py registers it.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from auth.credentials import hash_password, password_problem
from auth.dependencies import (
    client_address,
    csrf_protect,
    csrf_token,
    current_user,
    get_auth,
    get_session,
    require_admin,
    require_login,
    verify_csrf,
)
from auth.errors import AuthError, LoginRequired
from auth.gate import REDIRECT_KEY
from auth.models import AuthOutcome, Role, User
from core.config import get_settings

logger = logging.getLogger("pulsehours.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# Expose the session helpers as Jinja2 globals so layout.html and every form
# can call them without each route handler passing them in. Both receive the
# request object from the template context (always present).
templates.env.globals["current_user"] = current_user
templates.env.globals["csrf_token"] = csrf_token
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# HTTP status for each failed login outcome. The page is re-rendered with the
# outcome's message either way.
_LOGIN_STATUS: dict[AuthOutcome, int] = {
    AuthOutcome.INVALID_INPUT: 400,
    AuthOutcome.INVALID_CREDENTIALS: 401,
    AuthOutcome.INVALID_CSRF: 403,
    AuthOutcome.ACCOUNT_DEACTIVATED: 403,
    AuthOutcome.RATE_LIMITED: 429,
    AuthOutcome.SYSTEM_ERROR: 503,
}

_INVALID_FORM_MESSAGE = "Invalid form submission. Please try again."
_MAX_EMAIL_LENGTH = 255


def _safe_next(next_url: Optional[str], default: str) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative URLs ("//attacker.com"), and
    backslash tricks some browsers normalize into "//".
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return default


def _landing_for(user: User) -> str:
    settings = get_settings()
    return settings.admin_landing_path if user.is_admin else settings.user_landing_path


def _format_epoch(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


templates.env.filters["epoch"] = _format_epoch


def _render_login(
    request: Request,
    error_msg: Optional[str] = None,
    email: str = "",
    status_code: int = 200,
) -> HTMLResponse:
    """Render login.html. The password field is never echoed back."""
    info_msg = get_session(request).pop_flash("login_message")
    resp = templates.TemplateResponse(
        request,
        "login.html",
        {"error_msg": error_msg, "info_msg": info_msg, "email": email},
        status_code=status_code,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _render_users(
    request: Request,
    error_msg: Optional[str] = None,
    form: Optional[dict] = None,
    status_code: int = 200,
) -> HTMLResponse:
    auth = get_auth(request)
    users = auth.users.list_users()
    rows = [{"user": u, "logins": auth.session_audit.count_for_user(u.id)} for u in users]
    return templates.TemplateResponse(
        request,
        "admin/users.html",
        {"rows": rows, "roles": [r.value for r in Role], "error_msg": error_msg, "form": form or {}},
        status_code=status_code,
    )


def _render_error(request: Request, status_code: int, message: str) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "error.html",
        {"status_code": status_code, "message": message},
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Error pages
# ---------------------------------------------------------------------------


def auth_error_page(request: Request, exc: AuthError) -> Response:
    """Map an AuthError to its response.

    LoginRequired -> 302 /login (the gate already stored the destination in
    the session). AdminRequired / InvalidCsrfToken / AuthUnavailable -> the
    error page with the exception's status. Under /api/ every kind becomes
    the JSON error envelope instead.

    Sync so Starlette runs it in the threadpool: rendering the error page
    resolves current_user, which may hit the database.
    """
    if request.url.path.startswith("/api/"):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.outcome.value, "message": exc.message, "detail": None}},
        )
    if isinstance(exc, LoginRequired):
        return RedirectResponse("/login", status_code=302)
    if exc.outcome is AuthOutcome.FORBIDDEN:
        logger.warning(
            "Forbidden: %s %s by user_id=%s",
            request.method,
            request.url.path,
            get_session(request).record.user_id,
        )
    return _render_error(request, exc.status_code, exc.message)


# ---------------------------------------------------------------------------
# GET / -- role landing redirect
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(user: User = Depends(require_login)) -> RedirectResponse:
    return RedirectResponse(_landing_for(user), status_code=302)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> Response:
    """Render the login page. Already-authenticated users go to their landing page."""
    user = current_user(request)
    if user is not None:
        return RedirectResponse(_landing_for(user), status_code=302)
    return _render_login(request)


@limiter.limit(lambda: get_settings().login_rate_limit)  # coarse flood cap; must be ABOVE @router
@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    email: str = Form(default=""),
    password: str = Form(default=""),
    csrf_token: str = Form(default=""),
) -> Response:
    """Handle the login form.

    The CSRF check comes first; nothing else runs on a bad token. The email
    is kept for the re-rendered form, the password never is.
    """
    email = email.strip()[:_MAX_EMAIL_LENGTH]
    if not verify_csrf(request, csrf_token):
        return _render_login(request, _INVALID_FORM_MESSAGE, email, _LOGIN_STATUS[AuthOutcome.INVALID_CSRF])

    ctx = get_session(request)
    result = get_auth(request).service.login(
        ctx,
        email,
        password,
        source_address=client_address(request),
        user_agent=request.headers.get("user-agent", ""),
    )
    if not result.success:
        resp = _render_login(request, result.message, email, _LOGIN_STATUS[result.outcome])
        if result.outcome is AuthOutcome.RATE_LIMITED:
            resp.headers["Retry-After"] = str(result.retry_after_seconds)
        return resp

    target = _safe_next(ctx.pop_flash(REDIRECT_KEY), _landing_for(result.user))  # [C2]
    resp = RedirectResponse(target, status_code=303)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/logout")
@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Destroy the session and return to the login page.

    No CSRF check: logging out is the one state change a forged request
    cannot turn against the user, and it must work from a plain link.
    """
    ctx = get_session(request)
    auth = get_auth(request)
    if auth.sessions.is_logged_in(ctx):
        logger.info("Logout: user_id=%s from %s", ctx.record.user_id, client_address(request))
    auth.sessions.destroy(ctx)
    return RedirectResponse("/login", status_code=302)


# ---------------------------------------------------------------------------
# Landing pages
# ---------------------------------------------------------------------------


@router.get("/hours", response_class=HTMLResponse)
def hours(request: Request, user: User = Depends(require_login)) -> HTMLResponse:
    """User landing page. The hours forms themselves live outside the auth core."""
    return templates.TemplateResponse(request, "hours.html", {"user": user})


@router.get("/admin", response_class=HTMLResponse)
def admin_home(request: Request, user: User = Depends(require_admin)) -> HTMLResponse:
    """Admin landing page: recent login attempts for a quick brute-force check."""
    attempts = get_auth(request).attempts.recent(limit=25)
    return templates.TemplateResponse(request, "admin/index.html", {"user": user, "attempts": attempts})


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_class=HTMLResponse)
def admin_users(request: Request, user: User = Depends(require_admin)) -> HTMLResponse:
    return _render_users(request)


@router.post("/admin/users", response_class=HTMLResponse)
def admin_create_user(
    request: Request,
    user: User = Depends(require_admin),
    _csrf: None = Depends(csrf_protect),
    email: str = Form(default=""),
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
    role: str = Form(default=Role.USER.value),
    password: str = Form(default=""),
) -> Response:
    """Create an account. Admins pre-create every user; there is no self-registration."""
    form = {"email": email.strip(), "first_name": first_name.strip(), "last_name": last_name.strip(), "role": role}

    if "@" not in form["email"] or len(form["email"]) > _MAX_EMAIL_LENGTH:
        return _render_users(request, "Enter a valid email address.", form, 400)
    if role not in {r.value for r in Role}:
        return _render_users(request, "Unknown role.", form, 400)
    problem = password_problem(password)
    if problem:
        return _render_users(request, problem, form, 400)

    new_user = User(
        email=form["email"],
        first_name=form["first_name"][:100],
        last_name=form["last_name"][:100],
        role=Role(role),
        hashed_password=hash_password(password),
    )
    try:
        new_id = get_auth(request).users.create_user(new_user)
    except IntegrityError:
        return _render_users(request, "A user with that email already exists.", form, 409)

    logger.info("User created: user_id=%s role=%s by admin user_id=%s", new_id, role, user.id)
    return RedirectResponse("/admin/users", status_code=303)


@router.post("/admin/users/{user_id}/active", response_class=HTMLResponse)
def admin_set_active(
    request: Request,
    user_id: int,
    user: User = Depends(require_admin),
    _csrf: None = Depends(csrf_protect),
    active: str = Form(default=""),
) -> Response:
    """Activate or deactivate an account.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Deactivating the last active admin (no recovery path without DB access).
    Deactivation also revokes the account's sessions so it takes effect on
    the user's very next request, not when their cached snapshot expires.
    """
    auth = get_auth(request)
    target = auth.users.get_by_id(user_id)
    if target is None:
        return _render_error(request, 404, "User not found.")

    make_active = active == "1"
    if not make_active:
        if target.id == user.id:
            return _render_users(request, "You cannot deactivate your own account.", status_code=400)
        if target.is_admin and target.is_active and auth.users.count_active_admins() <= 1:
            return _render_users(request, "Cannot deactivate the last active admin account.", status_code=400)

    auth.users.update_user(user_id, is_active=make_active)
    if not make_active:
        auth.sessions.revoke_user(user_id)
    logger.info(
        "User %s: user_id=%s by admin user_id=%s",
        "activated" if make_active else "deactivated",
        user_id,
        user.id,
    )
    return RedirectResponse("/admin/users", status_code=303)


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


@router.get("/setup", response_class=HTMLResponse)
def setup_form(request: Request) -> HTMLResponse:
    """Render the first-run setup wizard. 404 once any user exists."""
    if not getattr(request.app.state, "setup_required", True):
        return _render_error(request, 404, "Page not found.")
    return templates.TemplateResponse(request, "setup.html", {"form": {}})


@router.post("/setup", response_class=HTMLResponse)
def setup_post(
    request: Request,
    email: str = Form(default=""),
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
    password: str = Form(default=""),
    confirm_password: str = Form(default=""),
    csrf_token: str = Form(default=""),
) -> Response:
    """Create the first Admin account.

    [M1] Race condition guard: re-checks has_users() inside the handler even
    though the middleware already checked setup_required. The DB-level check
    and the IntegrityError catch ensure only one concurrent request wins.
    """
    auth = get_auth(request)
    if auth.users.has_users():
        request.app.state.setup_required = False
        return RedirectResponse("/login", status_code=303)

    form = {"email": email.strip(), "first_name": first_name.strip(), "last_name": last_name.strip()}

    def _again(msg: str, status_code: int = 400) -> HTMLResponse:
        return templates.TemplateResponse(
            request, "setup.html", {"form": form, "error_msg": msg}, status_code=status_code
        )

    if not verify_csrf(request, csrf_token):
        return _again(_INVALID_FORM_MESSAGE, 403)
    if "@" not in form["email"] or len(form["email"]) > _MAX_EMAIL_LENGTH:
        return _again("Enter a valid email address.")
    if password != confirm_password:
        return _again("Passwords do not match.")
    problem = password_problem(password)
    if problem:
        return _again(problem)

    admin = User(
        email=form["email"],
        first_name=form["first_name"][:100],
        last_name=form["last_name"][:100],
        role=Role.ADMIN,
        hashed_password=hash_password(password),
    )
    try:
        auth.users.create_user(admin)
    except IntegrityError:
        # Another request created the account first [M1]
        pass
    request.app.state.setup_required = False
    logger.info("First-run setup complete: admin %s created", form["email"])
    return RedirectResponse("/login", status_code=303)
