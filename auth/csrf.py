"""
auth/csrf.py -- Per-session anti-forgery tokens.

token():  one random token per session (secrets.token_hex(32), 256 bits),
          created on first use and reused for the life of the session.
          Rendered into every state-mutating form as a hidden csrf_token field.
verify(): constant-time comparison (hmac.compare_digest) of the submitted
          value against the stored token. No stored token means no match.

A stale context (its identifier was rotated away) reads and claims the token
on the successor row, since that is the cookie the browser will submit with.
If the successor is gone there is no row to hold a token, and token() raises
AuthUnavailable rather than render a token nothing will accept.

Every POST handler that writes calls verify() (through the csrf_protect
dependency) before reading the rest of the form.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Optional

from auth.errors import AuthUnavailable
from auth.sessions import SessionContext, SessionStore

TOKEN_BYTES = 32

SESSION_CHANGED_MESSAGE = "Your session changed while this page was loading. Please reload the page."


class CsrfGuard:
    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def token(self, ctx: SessionContext) -> str:
        if ctx.record.csrf_token:
            return ctx.record.csrf_token
        candidate = secrets.token_hex(TOKEN_BYTES)
        if not ctx.stale:
            stored = self.store.claim_csrf_token(ctx.session_id, candidate)
        elif ctx.successor_key:
            stored = self.store.claim_csrf_token_for_key(ctx.successor_key, candidate)
        else:
            stored = None
        if stored is None:
            raise AuthUnavailable(SESSION_CHANGED_MESSAGE)
        ctx.record.csrf_token = stored
        return stored

    def verify(self, ctx: SessionContext, submitted: Optional[str]) -> bool:
        expected = ctx.record.csrf_token
        if not expected and ctx.stale and ctx.successor_key:
            expected = self.store.csrf_token_for_key(ctx.successor_key)
        if not expected or not isinstance(submitted, str) or not submitted:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8"))
