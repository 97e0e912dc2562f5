"""
snapshot.py — Baseline Snapshot & Reconciliation

Each schedule stores the configuration it was built from (staff, wards,
programs, SPT allocations, PCA preferences, team display names) so later
config edits do not silently rewrite old days.

ENVELOPE
────────
  {"schema_version": 1, "created_at": ISO-8601, "source": save|copy|migration,
   "data": {...sections...}}

  Older rows stored the sections directly; unwrap_stored() wraps those with
  source "migration" and reports was_wrapped=True.

HEALTH
──────
  ok        every section parsed
  repaired  some sections were missing/unreadable and were filled from live
  fallback  the stored value was unusable; rebuilt entirely from live
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from rehab_scheduler.models import PCAPreference, SpecialProgram, SPTAllocation, Staff, Ward

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SOURCES = ("save", "copy", "migration")

HEALTH_OK = "ok"
HEALTH_REPAIRED = "repaired"
HEALTH_FALLBACK = "fallback"

SECTIONS = ("staff", "special_programs", "spt_allocations", "wards", "pca_preferences", "team_display_names")


@dataclass
class BaselineSnapshot:
    staff: List[Staff] = field(default_factory=list)
    special_programs: List[SpecialProgram] = field(default_factory=list)
    spt_allocations: List[SPTAllocation] = field(default_factory=list)
    wards: List[Ward] = field(default_factory=list)
    pca_preferences: List[PCAPreference] = field(default_factory=list)
    team_display_names: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "staff": [s.to_dict() for s in self.staff],
            "special_programs": [p.to_dict() for p in self.special_programs],
            "spt_allocations": [a.to_dict() for a in self.spt_allocations],
            "wards": [w.to_dict() for w in self.wards],
            "pca_preferences": [p.to_dict() for p in self.pca_preferences],
            "team_display_names": dict(self.team_display_names),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BaselineSnapshot":
        return cls(
            staff=[Staff.from_dict(r) for r in data.get("staff") or []],
            special_programs=[SpecialProgram.from_dict(r) for r in data.get("special_programs") or []],
            spt_allocations=[SPTAllocation.from_dict(r) for r in data.get("spt_allocations") or []],
            wards=[Ward.from_dict(r) for r in data.get("wards") or []],
            pca_preferences=[PCAPreference.from_dict(r) for r in data.get("pca_preferences") or []],
            team_display_names=dict(data.get("team_display_names") or {}),
        )


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def build_envelope(data: Dict[str, Any], source: str = "save") -> Dict[str, Any]:
    if source not in SOURCES:
        raise ValueError(f"Unknown snapshot source {source!r}")
    return {
        "schema_version": SCHEMA_VERSION,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "source": source,
        "data": data,
    }


def unwrap_stored(stored: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Returns (envelope, was_wrapped)."""
    if "schema_version" in stored and "data" in stored:
        return stored, False
    logger.info("Wrapping legacy raw baseline snapshot")
    return build_envelope(dict(stored), source="migration"), True


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass
class SnapshotValidation:
    snapshot: BaselineSnapshot
    health: str
    issues: List[str] = field(default_factory=list)
    was_wrapped: bool = False
    envelope: Optional[Dict[str, Any]] = None


_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "staff": lambda rows: [Staff.from_dict(r) for r in rows],
    "special_programs": lambda rows: [SpecialProgram.from_dict(r) for r in rows],
    "spt_allocations": lambda rows: [SPTAllocation.from_dict(r) for r in rows],
    "wards": lambda rows: [Ward.from_dict(r) for r in rows],
    "pca_preferences": lambda rows: [PCAPreference.from_dict(r) for r in rows],
}


def validate_snapshot(stored: Any, live: BaselineSnapshot) -> SnapshotValidation:
    if not isinstance(stored, dict) or not stored:
        logger.warning("Baseline snapshot missing or unreadable, rebuilding from live config")
        return SnapshotValidation(
            live, HEALTH_FALLBACK, ["snapshot missing"],
            envelope=build_envelope(live.to_dict(), "migration"),
        )

    envelope, was_wrapped = unwrap_stored(stored)
    data = envelope.get("data")
    version = envelope.get("schema_version")
    if not isinstance(data, dict) or not isinstance(version, int) or version > SCHEMA_VERSION:
        logger.warning(f"Baseline snapshot unusable (schema_version={version!r}), rebuilding")
        return SnapshotValidation(
            live, HEALTH_FALLBACK, [f"unusable envelope (schema_version={version!r})"],
            was_wrapped=was_wrapped, envelope=build_envelope(live.to_dict(), "migration"),
        )

    issues: List[str] = []
    values: Dict[str, Any] = {}
    for section, parse in _PARSERS.items():
        rows = data.get(section)
        if not isinstance(rows, list):
            issues.append(f"{section}: missing, filled from live")
            values[section] = list(getattr(live, section))
            continue
        try:
            values[section] = parse(rows)
        except (KeyError, TypeError, ValueError) as exc:
            issues.append(f"{section}: unreadable ({exc}), filled from live")
            values[section] = list(getattr(live, section))

    names = data.get("team_display_names")
    if isinstance(names, dict):
        values["team_display_names"] = dict(names)
    else:
        issues.append("team_display_names: missing, filled from live")
        values["team_display_names"] = dict(live.team_display_names)

    snapshot = BaselineSnapshot(**values)
    if issues:
        for issue in issues:
            logger.warning(f"Baseline snapshot repaired: {issue}")
        envelope = dict(envelope, data=snapshot.to_dict())
    return SnapshotValidation(
        snapshot,
        HEALTH_REPAIRED if issues else HEALTH_OK,
        issues,
        was_wrapped=was_wrapped,
        envelope=envelope,
    )


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------

def _field_changes(before: Dict[str, Any], after: Dict[str, Any]) -> List[Dict[str, Any]]:
    changes = []
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            changes.append({"field": key, "from": before.get(key), "to": after.get(key)})
    return changes


def _diff_records(
    old: Dict[str, Dict[str, Any]],
    new: Dict[str, Dict[str, Any]],
    label: Callable[[str, Dict[str, Any]], str],
) -> Dict[str, List[Any]]:
    added = sorted(label(k, new[k]) for k in set(new) - set(old))
    removed = sorted(label(k, old[k]) for k in set(old) - set(new))
    changed = []
    for key in set(old) & set(new):
        fields = _field_changes(old[key], new[key])
        if fields:
            changed.append({"name": label(key, new[key]), "changes": fields})
    changed.sort(key=lambda c: c["name"])
    return {"added": added, "removed": removed, "changed": changed}


def diff_baseline_snapshot(snapshot: BaselineSnapshot, live: BaselineSnapshot) -> Dict[str, Dict[str, List[Any]]]:
    """
    Per-section differences between a schedule's saved baseline and the live
    config: what live added, removed and changed relative to the snapshot.
    """
    staff_names = {s.id: s.name for s in list(snapshot.staff) + list(live.staff)}

    def by_name(key, rec):
        return str(rec.get("name", key))

    def by_key(key, _rec):
        return key

    def spt_label(key, rec):
        return f"{staff_names.get(rec.get('staff_id'), rec.get('staff_id'))} ({key})"

    def index(rows, key):
        return {str(key(r)): r.to_dict() for r in rows}

    return {
        "staff": _diff_records(
            index(snapshot.staff, lambda s: s.id), index(live.staff, lambda s: s.id), by_name,
        ),
        "team_settings": _diff_records(
            {t: {"display_name": n} for t, n in snapshot.team_display_names.items()},
            {t: {"display_name": n} for t, n in live.team_display_names.items()},
            by_key,
        ),
        "wards": _diff_records(
            index(snapshot.wards, lambda w: w.name), index(live.wards, lambda w: w.name), by_name,
        ),
        "pca_preferences": _diff_records(
            index(snapshot.pca_preferences, lambda p: p.team),
            index(live.pca_preferences, lambda p: p.team),
            by_key,
        ),
        "special_programs": _diff_records(
            index(snapshot.special_programs, lambda p: p.id),
            index(live.special_programs, lambda p: p.id),
            by_name,
        ),
        "spt_allocations": _diff_records(
            index(snapshot.spt_allocations, lambda a: a.id),
            index(live.spt_allocations, lambda a: a.id),
            spt_label,
        ),
    }


def has_drift(diff: Dict[str, Dict[str, List[Any]]]) -> bool:
    return any(section[kind] for section in diff.values() for kind in ("added", "removed", "changed"))
