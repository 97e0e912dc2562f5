"""
errors.py — Exception types and non-fatal warning records

Hard failures raise an AllocationError subclass. Soft problems found while
allocating (unmet FTE, a preferred slot nobody could fill) are collected as
AllocationWarning records on the step result instead.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class AllocationError(Exception):
    """Base class for engine errors."""


class OverrideError(AllocationError, ValueError):
    """An override patch is invalid (unknown field, capacity exceeded, overlap)."""


class NavigationError(AllocationError):
    """Requested workflow step transition is not allowed."""


class ConfirmationRequired(AllocationError):
    """Clearing a step would discard data in later steps."""

    def __init__(self, step: str, affected_steps):
        self.step = step
        self.affected_steps = list(affected_steps)
        super().__init__(
            f"Clearing {step} also clears {', '.join(self.affected_steps)}; pass confirm=True"
        )


class StepCancelled(AllocationError):
    """A human-interaction resolver returned a cancellation."""

    def __init__(self, resolver: str):
        self.resolver = resolver
        super().__init__(f"{resolver} cancelled")


class GatewayError(AllocationError):
    """Persistence gateway request failed or returned an unusable payload."""


class ScheduleNotFound(GatewayError):
    """The requested schedule date has no stored schedule."""

    reason = "not_found"


# Warning kinds
WARN_UNMET_PENDING = "unmet_pending_fte"
WARN_PREFERRED_SLOT = "preferred_slot_unassignable"
WARN_UNMET_SUBSTITUTION = "unmet_substitution"
WARN_SUBSTITUTION_CONFLICT = "substitution_conflict"
WARN_INVALID_POOL_ENTRY = "invalid_pool_entry"


@dataclass
class AllocationWarning:
    kind: str
    message: str
    team: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        prefix = f"[{self.kind}]"
        if self.team:
            prefix += f" {self.team}"
        return f"{prefix} {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "team": self.team,
            "details": dict(self.details),
        }
