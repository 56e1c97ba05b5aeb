"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and web/routes.py (to
apply the coarse per-IP cap on POST /login with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. The attempt-log based RateLimiter in auth/rate_limit.py is the
real brute-force defense; this layer only sheds floods before they reach
bcrypt.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
