"""
auth/rate_limit.py -- Sliding-window login throttling over the attempt log.

Policy (defaults from core.config):
  Count FAILED attempts in the trailing window (15 minutes), once keyed by
  source address and once keyed by email. Block when the larger of the two
  reaches the threshold (5).

  max(), not sum(): one IP spraying many emails trips the per-IP count, many
  IPs hammering one email trip the per-email count, and users behind a shared
  NAT are only held to their own email's count plus the shared IP's failures.

  Successful logins do not clear earlier failures. The window is purely
  time-based.

Failure mode: if the attempt log cannot be read, check() fails OPEN and lets
the attempt through. Credential checks still run (and fail closed) behind it.

Counting is advisory. Two processes can both read a pre-increment count and
both proceed; the bound is "about five", and no locks are taken to make it
exact.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError

from auth.audit import LoginAttemptLog
from auth.models import RateLimitDecision

logger = logging.getLogger("pulsehours.auth.rate_limit")


def retry_message(retry_after: int) -> str:
    minutes = max(1, math.ceil(retry_after / 60))
    return f"Too many failed login attempts. Please try again in {minutes} minutes."


class RateLimiter:
    def __init__(
        self,
        attempts: LoginAttemptLog,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock

    def check(self, email: str, source_address: str) -> RateLimitDecision:
        """Decide whether a login attempt for (email, source_address) may proceed."""
        now = self._clock()
        since = now - self.window_seconds
        try:
            per_key = [
                self.attempts.failures_since("source_address", source_address, since),
                self.attempts.failures_since("email", email, since),
            ]
        except SQLAlchemyError:
            logger.exception("Rate limit check failed -- allowing attempt (fail open)")
            return RateLimitDecision(is_blocked=False, attempts_remaining=self.max_attempts)

        count = max(c for c, _ in per_key)
        if count < self.max_attempts:
            return RateLimitDecision(is_blocked=False, attempts_remaining=self.max_attempts - count)

        # Blocked until every over-threshold key's oldest counted failure has
        # aged out of the window.
        retry_after = max(
            oldest + self.window_seconds - now
            for c, oldest in per_key
            if c >= self.max_attempts and oldest is not None
        )
        retry_after = max(1, math.ceil(retry_after))
        return RateLimitDecision(
            is_blocked=True,
            attempts_remaining=0,
            retry_after=retry_after,
            message=retry_message(retry_after),
        )
