"""Exception types for the activity-tier engine.

The pure kernels return rejection codes; ``ActivityTierService`` raises these
for callers of the single-item and administrative paths.
"""

from __future__ import annotations


class ActivityTierError(Exception):
    """Base class for every error raised by this package."""


class UnauthorizedError(ActivityTierError):
    """Raised when a credential does not satisfy the required capability."""


class InvalidTierError(ActivityTierError, ValueError):
    """Raised when a tier value falls outside ``[0, MAX_TIER]``."""


class InvalidParametersError(ActivityTierError, ValueError):
    """Raised when a curve configuration violates its bounds."""


class InvalidBatchError(ActivityTierError, ValueError):
    """Raised when batch keys and tiers do not pair up."""


class TooFrequentError(ActivityTierError):
    """Raised when a single-item override arrives inside the cooldown window."""

    def __init__(self, key: str, retry_at: int) -> None:
        self.key = key
        self.retry_at = retry_at
        super().__init__(f"tier override for {key!r} too frequent; retry at {retry_at}")


class TierInvariantError(ActivityTierError):
    """Raised when a post-state violates one or more invariants."""

    def __init__(self, violations: list[str]) -> None:
        self.violations = violations
        super().__init__(f"invariant violations: {', '.join(violations)}")


# Rejection codes shared by the pure kernels.
REJECT_UNAUTHORIZED = "unauthorized"
REJECT_INVALID_TIER = "invalid_tier"
REJECT_TOO_FREQUENT = "too_frequent"
