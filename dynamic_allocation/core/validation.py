"""
Validation of pass inputs before an allocation is computed.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING
import logging

from .errors import InvalidParameters

if TYPE_CHECKING:
    from dynamic_allocation.allocation.models import BudgetAllocationInputs

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a validation check."""
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        """Add an error message."""
        self.errors.append(message)
        self.valid = False

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def merge(self, other: "ValidationResult") -> None:
        """Merge another validation result into this one."""
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        if not other.valid:
            self.valid = False

    def raise_if_invalid(self, subject: str) -> None:
        """Raise InvalidParameters carrying every collected error."""
        for warning in self.warnings:
            logger.warning(f"{subject}: {warning}")
        if not self.valid:
            raise InvalidParameters(f"Invalid {subject}: " + "; ".join(self.errors), self.errors)

    def __str__(self) -> str:
        """String representation of validation result."""
        lines = []
        if self.valid:
            lines.append("Validation PASSED")
        else:
            lines.append("Validation FAILED")

        if self.errors:
            lines.append(f"  Errors ({len(self.errors)}):")
            for err in self.errors:
                lines.append(f"    - {err}")

        if self.warnings:
            lines.append(f"  Warnings ({len(self.warnings)}):")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        return "\n".join(lines)


class InputValidator:
    """Range checks for BudgetAllocationInputs."""

    def validate_all(self, inputs: "BudgetAllocationInputs") -> ValidationResult:
        """
        Run all validation checks on a pass's inputs.

        Returns
        -------
        ValidationResult
            Combined validation result.
        """
        result = ValidationResult()
        result.merge(self.validate_budgets(inputs))
        result.merge(self.validate_timing(inputs))
        result.merge(self.validate_nodes(inputs))
        return result

    def validate_budgets(self, inputs: "BudgetAllocationInputs") -> ValidationResult:
        result = ValidationResult()

        if inputs.total_budget < 0:
            result.add_error(f"totalBudget must be non-negative (got {inputs.total_budget})")
        if inputs.remaining_budget < 0:
            result.add_error(f"remainingBudget must be non-negative (got {inputs.remaining_budget})")
        if inputs.remaining_budget > inputs.total_budget:
            result.add_error(
                f"remainingBudget ({inputs.remaining_budget}) exceeds totalBudget ({inputs.total_budget})"
            )
        if not 0 < inputs.margin <= 1:
            result.add_error(f"margin must be in (0, 1] (got {inputs.margin})")
        if inputs.per_mille_fees < 0:
            result.add_error(f"perMilleFees must be non-negative (got {inputs.per_mille_fees})")

        return result

    def validate_timing(self, inputs: "BudgetAllocationInputs") -> ValidationResult:
        result = ValidationResult()

        if inputs.start_time >= inputs.end_time:
            result.add_error("Campaign startTime must be before endTime")
        if inputs.period_duration.total_seconds() <= 0:
            result.add_error("periodDuration must be positive")
        if inputs.period_start >= inputs.end_time:
            result.add_warning("periodStart is at or after the campaign end; nothing will be spent")
        if inputs.period_start < inputs.start_time:
            result.add_warning("periodStart is before the campaign start")

        return result

    def validate_nodes(self, inputs: "BudgetAllocationInputs") -> ValidationResult:
        result = ValidationResult()
        seen = set()

        for node in inputs.per_node_inputs:
            if node.allocation_id in seen:
                result.add_error(f"Duplicate allocationId '{node.allocation_id}'")
            seen.add(node.allocation_id)

            if len(node.measure_set) == 0:
                result.add_error(f"Node '{node.allocation_id}' has an empty measure set")
            if node.valuation < 0:
                result.add_error(f"Node '{node.allocation_id}' has a negative valuation")
            if node.estimated_cost_per_mille is not None and node.estimated_cost_per_mille < 0:
                result.add_error(f"Node '{node.allocation_id}' has a negative estimatedCostPerMille")
            counters = (
                node.period_impressions,
                node.period_media_spend,
                node.lifetime_impressions,
                node.lifetime_media_spend,
            )
            if any(value < 0 for value in counters):
                result.add_error(f"Node '{node.allocation_id}' has negative delivery counters")

        return result
