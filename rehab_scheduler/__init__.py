"""
Rehab Staff & Bed Allocation Engine

Modules:
- schedule_config / models: teams, slots, leave types, domain records
- capacity: bed and FTE math, quarter rounding
- overrides: per-staff manual edits
- therapist_step / floating_pca / bed_relieving: workflow steps 2-4
- workflow: per-date controller (navigation, undo/redo, cancellation)
- snapshot / gateway / schedule_copy: persistence and cross-day copy
- constraints / repair: invariant checks and one-shot repair
- config / exporter / dry_run: CSV inputs, exports, CLI
"""

from .capacity import (
    round_to_nearest_quarter_with_midpoint,
    compute_team_calculations,
)
from .overrides import OverrideStore, StaffOverride
from .resolvers import SKIP, CANCEL, BACK, ResolverSet, ScriptedResolver
from .workflow import WorkflowController, StepOutcome

__all__ = [
    "round_to_nearest_quarter_with_midpoint",
    "compute_team_calculations",
    "OverrideStore",
    "StaffOverride",
    "SKIP",
    "CANCEL",
    "BACK",
    "ResolverSet",
    "ScriptedResolver",
    "WorkflowController",
    "StepOutcome",
]
