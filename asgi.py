"""
asgi.py -- Application assembly for PulseHours.

This is the ONLY file that wires api/ and web/ together. api/main.py knows
nothing about web/; web/routes.py borrows only the shared slowapi limiter
from api/limiter.py.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from auth.errors import AuthError
from web.routes import auth_error_page
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])

# Browser routes get redirects and error pages instead of the JSON envelope.
# auth_error_page() still answers with JSON under /api/.
app.add_exception_handler(AuthError, auth_error_page)
