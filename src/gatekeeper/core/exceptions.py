"""
Error taxonomy for the admission engine.

Configuration problems are raised as early as possible (policy construction,
registration). Store failures are wrapped in BackendError so the decision
handler can apply the fail-open/fail-closed switch instead of confusing them
with a denial. RateLimitExceeded is the expected, frequent outcome and carries
the full Decision so callers can build retry hints.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from gatekeeper.core.policy import RateLimitPolicy
    from gatekeeper.core.strategies.base import Decision


class GatekeeperError(Exception):
    """Base class for every error raised by the admission engine."""


class ConfigurationError(GatekeeperError):
    """A policy, registry entry or limit parameter is inconsistent."""


class BackendError(GatekeeperError):
    """The shared store is unreachable or a script failed to execute."""


class ExpressionError(GatekeeperError):
    """A key template or guard condition could not be evaluated."""


class RateLimitExceeded(GatekeeperError):
    """
    Raised when a guarded operation is denied admission.

    Attributes:
        decision: The Decision produced by the algorithm engine.
        policy: The policy that denied the request (may be None).
        error_code: Numeric code for client payloads (429 by default).
    """

    def __init__(
        self,
        decision: Decision,
        policy: RateLimitPolicy | None = None,
        message: str | None = None,
        error_code: int | None = None,
    ) -> None:
        self.decision = decision
        self.policy = policy
        self.error_code = error_code or decision.error_code or 429
        self.message = (
            message
            or decision.message
            or (policy.message if policy is not None else "Too many requests")
        )
        super().__init__(self.message)

    @property
    def remaining(self) -> int:
        return self.decision.remaining

    @property
    def limit(self) -> int:
        return self.decision.limit

    @property
    def reset_at(self) -> int:
        return self.decision.reset_at

    @property
    def wait_ms(self) -> int:
        return self.decision.wait_ms

    @property
    def hotspot(self) -> bool:
        return self.decision.is_hotspot

    @property
    def hotspot_level(self) -> int:
        return self.decision.hotspot_level

    def seconds_to_reset(self, now_ms: int | None = None) -> int:
        return self.decision.seconds_to_reset(now_ms)

    def to_payload(self, now_ms: int | None = None) -> dict[str, Any]:
        """Structured body for client-visible error responses."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return {
            "error": "rate_limit_exceeded",
            "code": self.error_code,
            "message": self.message,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "retry_after": self.decision.retry_after(now_ms),
            "hotspot": self.hotspot,
        }

    def __repr__(self) -> str:
        detail = f"remaining={self.remaining}, limit={self.limit}"
        if self.hotspot:
            detail += f", hotspot=True, level={self.hotspot_level}"
        return f"RateLimitExceeded(message={self.message!r}, code={self.error_code}, {detail})"
