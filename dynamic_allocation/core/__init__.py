"""Core error types, validation and time handling."""

from .errors import (
    AllocationError,
    InvalidParameters,
    PersistConflict,
    UpstreamUnavailable,
    AllocationInvariantError,
    CampaignNotFound,
)
from .validation import ValidationResult, InputValidator
from .timing import (
    parse_duration,
    format_duration,
    parse_timestamp,
    format_timestamp,
    ensure_utc,
    period_budget,
)

__all__ = [
    "AllocationError",
    "InvalidParameters",
    "PersistConflict",
    "UpstreamUnavailable",
    "AllocationInvariantError",
    "CampaignNotFound",
    "ValidationResult",
    "InputValidator",
    "parse_duration",
    "format_duration",
    "parse_timestamp",
    "format_timestamp",
    "ensure_utc",
    "period_budget",
]
