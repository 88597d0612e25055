"""
Error types raised by the allocation engine.

The scheduler decides retry policy from the error class:
InvalidParameters and AllocationInvariantError are fatal for a pass,
PersistConflict is retried by the lifecycle controller, and
UpstreamUnavailable is handed back to the scheduler untouched.
"""

from typing import Any, Optional


class AllocationError(Exception):
    """Base class for allocation engine errors."""


class InvalidParameters(AllocationError):
    """A configuration value or pass input is outside its documented range."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class PersistConflict(AllocationError):
    """The allocation record changed between read and write."""

    def __init__(self, campaign_id: str, expected_version: int, attempts: int = 1):
        super().__init__(
            f"Allocation record for campaign '{campaign_id}' changed "
            f"(expected version {expected_version}, {attempts} attempt(s))"
        )
        self.campaign_id = campaign_id
        self.expected_version = expected_version
        self.attempts = attempts


class UpstreamUnavailable(AllocationError):
    """A collaborator (store, campaign source, measure source) failed."""


class AllocationInvariantError(AllocationError):
    """The distributor produced a negative budget or overspent the campaign."""

    def __init__(self, message: str, snapshot: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.snapshot = snapshot or {}


class CampaignNotFound(AllocationError):
    """The campaign source has no campaign with the requested id."""

    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign '{campaign_id}' not found")
        self.campaign_id = campaign_id
