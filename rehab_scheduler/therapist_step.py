"""
therapist_step.py — Step 2: Therapist + Non-floating PCA Allocation

Order of work:
  1. Special-program override resolver (optional) → merged into overrides
  2. SPT final-edit resolver (optional); BACK re-opens step 1
  3. Therapists onto their override / home team (split rows when FTE is
     divided across teams); SPTs with a weekday SPT allocation go to the
     team with the lowest PT
  4. Floating PCAs serving an active special program get the program slots
  5. Non-floating PCAs onto their team at remaining FTE; missing slots
     make them substitution needs
  6. Substitution: rank floating candidates per need, escalate to the
     substitution resolver only when the choice is contended, otherwise
     take the best match. A (floating PCA, slot) pair never covers two gaps,
     and no floating PCA takes more quarter slots than its FTE allows.

Unresolvable gaps are warnings, never failures. They show up as pending
FTE in Step 3. A cancellation from any resolver restores the
override store to its state at entry and raises StepCancelled.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from rehab_scheduler.capacity import effective_fte, required_program_slots, round_down_to_quarter
from rehab_scheduler.errors import (
    WARN_SUBSTITUTION_CONFLICT,
    WARN_UNMET_SUBSTITUTION,
    AllocationWarning,
    StepCancelled,
)
from rehab_scheduler.models import (
    PCAAllocation,
    PCAPreference,
    SpecialProgram,
    SPTAllocation,
    Staff,
    TherapistAllocation,
)
from rehab_scheduler.overrides import OverrideStore, target_key
from rehab_scheduler.resolvers import (
    CANCEL,
    SKIP,
    ResolverSet,
    call_resolver,
    is_navigation_back,
)
from rehab_scheduler.schedule_config import (
    DRM_PROGRAM_NAME,
    FTE_EPSILON,
    SLOTS,
    SLOT_FTE,
    STEP_THERAPIST,
    TEAMS,
)

logger = logging.getLogger(__name__)

RANK_ORDER = {"SPT": 0, "APPT": 1, "RPT": 2, "PCA": 3}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class SubstitutionNeed:
    team: str
    non_floating_pca_id: str
    name: str
    missing_slots: List[int]

    @property
    def key(self) -> str:
        return target_key(self.team, self.non_floating_pca_id)


@dataclass
class SubstitutionCandidate:
    id: str
    name: str
    is_preferred: bool
    floor_match: bool
    coverable_slots: List[int]

    def rank_key(self) -> Tuple[bool, bool, int, str]:
        return (not self.is_preferred, not self.floor_match, -len(self.coverable_slots), self.name)


@dataclass
class Step2Result:
    therapist_allocations: List[TherapistAllocation] = field(default_factory=list)
    pca_allocations: List[PCAAllocation] = field(default_factory=list)
    substitution_needs: List[SubstitutionNeed] = field(default_factory=list)
    substitution_selections: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    escalated: bool = False
    warnings: List[AllocationWarning] = field(default_factory=list)


def collect_program_overrides(overrides: OverrideStore) -> Dict[str, Dict[str, Any]]:
    """Fold per-staff special_program_overrides into {program_id: {...}}."""
    merged: Dict[str, Dict[str, Any]] = {}
    for _staff_id, record in overrides.items():
        for program_id, values in (record.special_program_overrides or {}).items():
            merged.setdefault(program_id, {}).update(values or {})
    return merged


# ---------------------------------------------------------------------------
# Resolver phase
# ---------------------------------------------------------------------------

async def _resolve_program_and_spt_edits(
    staff: List[Staff],
    overrides: OverrideStore,
    active_programs: List[SpecialProgram],
    spt_today: Dict[str, SPTAllocation],
    resolvers: ResolverSet,
) -> None:
    staff_by_id = {s.id: s for s in staff}
    while True:
        if resolvers.special_program and active_programs:
            result = await call_resolver(resolvers.special_program, active_programs, staff)
            if result is None or result is CANCEL:
                raise StepCancelled("special_program")
            if isinstance(result, dict):
                for staff_id, program_overrides in result.items():
                    capacity = staff_by_id[staff_id].base_capacity if staff_id in staff_by_id else None
                    overrides.apply_override(
                        staff_id, {"special_program_overrides": program_overrides}, capacity,
                    )

        if not (resolvers.spt_final_edit and spt_today):
            return
        spt_staff = [staff_by_id[sid] for sid in spt_today if sid in staff_by_id]
        result = await call_resolver(resolvers.spt_final_edit, spt_staff, dict(spt_today))
        if is_navigation_back(result):
            if resolvers.special_program and active_programs:
                logger.info("SPT final edit → back to special-program overrides")
                continue
            return
        if result is None or result is CANCEL:
            raise StepCancelled("spt_final_edit")
        if isinstance(result, dict):
            for staff_id, update in result.items():
                patch: Dict[str, Any] = {}
                if "team" in update:
                    patch["team"] = update["team"]
                if "fte_by_team" in update:
                    patch["therapist_team_fte_by_team"] = update["fte_by_team"]
                if patch:
                    capacity = staff_by_id[staff_id].base_capacity if staff_id in staff_by_id else None
                    overrides.apply_override(staff_id, patch, capacity)
        return


# ---------------------------------------------------------------------------
# Therapists
# ---------------------------------------------------------------------------

def _program_subtraction(
    staff_id: str,
    programs: List[SpecialProgram],
    own_overrides: Dict[str, Any],
) -> Tuple[float, List[str]]:
    subtraction = 0.0
    program_ids: List[str] = []
    for program in programs:
        if staff_id not in program.staff_ids:
            continue
        program_ids.append(program.id)
        edited = (own_overrides.get(program.id) or {}).get("fte_subtraction")
        if edited is None:
            edited = program.therapist_fte_subtraction.get(staff_id, 0.0)
        subtraction += float(edited)
    return subtraction, program_ids


def _pick_spt_team(
    candidate_teams: List[str],
    pt_by_team: Dict[str, float],
    teams_with_spt: Set[str],
    previous_team: Optional[str],
) -> str:
    def key(team: str):
        return (
            round(pt_by_team.get(team, 0.0), 4),
            team in teams_with_spt,
            team != previous_team,
            TEAMS.index(team),
        )
    return min(candidate_teams, key=key)


def allocate_therapists(
    staff: List[Staff],
    overrides: OverrideStore,
    weekday: str,
    active_programs: List[SpecialProgram],
    spt_today: Dict[str, SPTAllocation],
    previous_spt_teams: Optional[Dict[str, str]] = None,
) -> List[TherapistAllocation]:
    previous_spt_teams = previous_spt_teams or {}
    rows: List[TherapistAllocation] = []
    deferred_spt: List[Tuple[Staff, float]] = []

    for member in sorted(staff, key=lambda s: (RANK_ORDER[s.rank], s.name)):
        if not member.is_therapist or member.status == "inactive":
            continue
        record = overrides.get(member.id)
        fte = effective_fte(member, record)
        if fte <= FTE_EPSILON:
            continue
        leave_type = record.leave_type if record else None
        own = (record.special_program_overrides if record else None) or {}
        subtraction, program_ids = _program_subtraction(member.id, active_programs, own)

        split = record.therapist_team_fte_by_team if record else None
        if split:
            for team in TEAMS:
                share = float(split.get(team, 0.0))
                if share > FTE_EPSILON:
                    rows.append(TherapistAllocation(
                        staff_id=member.id, team=team, fte_therapist=share,
                        leave_type=leave_type, special_program_ids=list(program_ids),
                        manual_override=True,
                    ))
            continue

        team = (record.team if record else None) or member.team
        spt = spt_today.get(member.id)
        if member.rank == "SPT" and spt is not None and not (record and record.team):
            addon = spt.fte_addon if spt.fte_addon > 0 else fte
            deferred_spt.append((member, min(fte, addon)))
            continue
        if team is None:
            logger.debug(f"{member.name}: no team, not allocated")
            continue

        rows.append(TherapistAllocation(
            staff_id=member.id,
            team=team,
            fte_therapist=max(0.0, fte - subtraction),
            slot_half="am" if leave_type == "half day VL" else None,
            leave_type=leave_type,
            special_program_ids=program_ids,
            manual_override=bool(record and record.team),
        ))

    # SPT add-ons go where PT is thinnest
    for member, fte in deferred_spt:
        pt_by_team = {t: 0.0 for t in TEAMS}
        teams_with_spt: Set[str] = set()
        rank_by_id = {s.id: s.rank for s in staff}
        for row in rows:
            pt_by_team[row.team] += row.fte_therapist
            if rank_by_id.get(row.staff_id) == "SPT":
                teams_with_spt.add(row.team)
        candidates = spt_today[member.id].teams or TEAMS
        team = _pick_spt_team(candidates, pt_by_team, teams_with_spt, previous_spt_teams.get(member.id))
        rows.append(TherapistAllocation(
            staff_id=member.id, team=team, fte_therapist=fte,
            leave_type=overrides.get(member.id).leave_type if overrides.get(member.id) else None,
        ))
        logger.debug(f"SPT {member.name} → {team} ({fte:.2f})")

    return rows


# ---------------------------------------------------------------------------
# PCAs
# ---------------------------------------------------------------------------

def _available_slots(member: Staff, overrides: OverrideStore) -> List[int]:
    record = overrides.get(member.id)
    if record and record.available_slots is not None:
        return list(record.available_slots)
    fte = effective_fte(member, record)
    if fte <= FTE_EPSILON:
        return []
    return list(SLOTS)


def _invalid_slot(member: Staff, overrides: OverrideStore) -> Optional[int]:
    record = overrides.get(member.id)
    if record and record.invalid_slots:
        return record.invalid_slots[0]
    return None


def _slots_left(member: Staff, overrides: OverrideStore, row: Optional[PCAAllocation] = None) -> int:
    """Quarter slots a PCA can still take: rounded-down FTE minus slots already owned."""
    capacity = int(round(round_down_to_quarter(effective_fte(member, overrides.get(member.id))) / SLOT_FTE))
    owned = int(round(row.slot_assigned / SLOT_FTE)) if row is not None else 0
    return max(0, capacity - owned)


def allocate_program_pcas(
    staff: List[Staff],
    overrides: OverrideStore,
    weekday: str,
    active_programs: List[SpecialProgram],
) -> Tuple[Dict[str, PCAAllocation], List[AllocationWarning]]:
    """Give each active program's slots to a floating PCA (preference order first)."""
    program_overrides = collect_program_overrides(overrides)
    staff_by_id = {s.id: s for s in staff}
    rows: Dict[str, PCAAllocation] = {}
    warnings: List[AllocationWarning] = []

    for program in active_programs:
        if program.name == DRM_PROGRAM_NAME:
            continue
        override = program_overrides.get(program.id, {})
        slots = required_program_slots(program, weekday, override)
        if not slots:
            continue
        preferred = override.get("pca_id")
        order = ([preferred] if preferred else []) + program.pca_preference_order + program.staff_ids

        chosen: Optional[Staff] = None
        for staff_id in order:
            member = staff_by_id.get(staff_id)
            if member is None or not member.floating or member.status == "inactive":
                continue
            free = set(_available_slots(member, overrides))
            if staff_id in rows:
                free &= set(rows[staff_id].free_slots())
            if set(slots) <= free and len(slots) <= _slots_left(member, overrides, rows.get(staff_id)):
                chosen = member
                break
        if chosen is None:
            warnings.append(AllocationWarning(
                kind=WARN_UNMET_SUBSTITUTION,
                message=f"No floating PCA available for {program.name} slots {slots}",
                team=program.team,
                details={"program_id": program.id, "slots": slots},
            ))
            continue

        row = rows.get(chosen.id)
        if row is None:
            fte = effective_fte(chosen, overrides.get(chosen.id))
            row = PCAAllocation(
                staff_id=chosen.id, team=program.slot_team(slots[0]) or TEAMS[0],
                fte_pca=fte, fte_remaining=fte,
                invalid_slot=_invalid_slot(chosen, overrides),
            )
            rows[chosen.id] = row
        for slot in slots:
            team = program.slot_team(slot)
            if team is None:
                continue
            row.set_slot(slot, team)
            row.special_program_slots.append(slot)
        row.special_program_ids.append(program.id)
        row.recompute_remaining()
        logger.info(f"{program.name}: {chosen.name} slots {slots}")
    return rows, warnings


def allocate_non_floating_pcas(
    staff: List[Staff],
    overrides: OverrideStore,
    active_programs: List[SpecialProgram],
) -> Tuple[List[PCAAllocation], List[SubstitutionNeed]]:
    rows: List[PCAAllocation] = []
    needs: List[SubstitutionNeed] = []

    for member in sorted(staff, key=lambda s: s.name):
        if not member.is_pca or member.floating or member.status == "inactive":
            continue
        record = overrides.get(member.id)
        team = (record.team if record else None) or member.team
        if team is None:
            continue
        fte = effective_fte(member, record)
        available = _available_slots(member, overrides)
        invalid = _invalid_slot(member, overrides)

        row = PCAAllocation(
            staff_id=member.id, team=team, fte_pca=fte, fte_remaining=fte,
            invalid_slot=invalid,
            leave_type=record.leave_type if record else None,
            special_program_ids=[p.id for p in active_programs if member.id in p.staff_ids],
        )
        for slot in available:
            row.set_slot(slot, team)
        if invalid is not None and row.get_slot(invalid) is None:
            row.set_slot(invalid, team)
        row.recompute_remaining()
        rows.append(row)

        missing = [s for s in SLOTS if s not in available and s != invalid]
        if fte < 1.0 - FTE_EPSILON and missing:
            needs.append(SubstitutionNeed(team, member.id, member.name, missing))

    needs.sort(key=lambda n: (TEAMS.index(n.team), n.name))
    return rows, needs


# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------

def rank_substitution_candidates(
    need: SubstitutionNeed,
    staff: List[Staff],
    overrides: OverrideStore,
    floating_rows: Dict[str, PCAAllocation],
    preferences: Dict[str, PCAPreference],
) -> List[SubstitutionCandidate]:
    pref = preferences.get(need.team)
    preferred_ids = set(pref.preferred_pca_ids) if pref else set()
    floor = pref.floor_pca_selection if pref else None
    candidates: List[SubstitutionCandidate] = []

    for member in staff:
        if not member.floating or member.status == "inactive":
            continue
        row = floating_rows.get(member.id)
        if _slots_left(member, overrides, row) == 0:
            continue
        free = set(_available_slots(member, overrides))
        if row is not None:
            free &= set(row.free_slots())
        coverable = sorted(free & set(need.missing_slots))
        if not coverable:
            continue
        candidates.append(SubstitutionCandidate(
            id=member.id,
            name=member.name,
            is_preferred=member.id in preferred_ids,
            floor_match=bool(floor and floor in member.floor_pca),
            coverable_slots=coverable,
        ))
    candidates.sort(key=SubstitutionCandidate.rank_key)
    return candidates


def needs_escalation(
    needs: List[SubstitutionNeed],
    candidates_by_key: Dict[str, List[SubstitutionCandidate]],
) -> bool:
    """
    Ask a human when the same floating PCA could fill overlapping gaps of
    two different non-floating PCAs, or when a need's top two candidates
    only differ by name.
    """
    claims: Dict[Tuple[str, int], Set[str]] = {}
    for need in needs:
        for cand in candidates_by_key.get(need.key, []):
            for slot in cand.coverable_slots:
                claims.setdefault((cand.id, slot), set()).add(need.key)
    if any(len(keys) > 1 for keys in claims.values()):
        return True
    for need in needs:
        cands = candidates_by_key.get(need.key, [])
        if len(cands) > 1 and cands[0].rank_key()[:3] == cands[1].rank_key()[:3]:
            return True
    return False


def _auto_select(
    need: SubstitutionNeed,
    candidates: List[SubstitutionCandidate],
    claimed: Set[Tuple[str, int]],
    remaining: List[int],
    slots_left: Dict[str, int],
) -> List[Dict[str, Any]]:
    picks: List[Dict[str, Any]] = []
    for cand in candidates:
        if not remaining:
            break
        slots = [s for s in cand.coverable_slots if s in remaining and (cand.id, s) not in claimed]
        slots = slots[:slots_left.get(cand.id, len(SLOTS))]
        if not slots:
            continue
        picks.append({"floating_pca_id": cand.id, "slots": slots})
        slots_left[cand.id] = slots_left.get(cand.id, len(SLOTS)) - len(slots)
        for slot in slots:
            claimed.add((cand.id, slot))
            remaining.remove(slot)
    return picks


def resolve_substitutions(
    needs: List[SubstitutionNeed],
    candidates_by_key: Dict[str, List[SubstitutionCandidate]],
    user_selections: Optional[Dict[str, List[Dict[str, Any]]]],
    slots_left: Optional[Dict[str, int]] = None,
) -> Tuple[Dict[str, List[Dict[str, Any]]], List[AllocationWarning]]:
    """
    Merge user selections (may be partial) with automatic best matches,
    keeping (floating PCA, slot) pairs disjoint across needs.

    `slots_left` caps the quarter slots each floating PCA may take in total;
    a user pick beyond that cap is trimmed and reported as a conflict.
    """
    user_selections = user_selections or {}
    slots_left = dict(slots_left or {})
    claimed: Set[Tuple[str, int]] = set()
    final: Dict[str, List[Dict[str, Any]]] = {}
    warnings: List[AllocationWarning] = []

    # User choices first so automatic picks route around them
    for need in needs:
        if need.key not in user_selections:
            continue
        valid = {c.id: set(c.coverable_slots) for c in candidates_by_key.get(need.key, [])}
        remaining = list(need.missing_slots)
        picks: List[Dict[str, Any]] = []
        for choice in user_selections[need.key] or []:
            pca_id = choice.get("floating_pca_id")
            wanted = choice.get("slots") or sorted(valid.get(pca_id, set()) & set(remaining))
            slots = [
                s for s in wanted
                if s in valid.get(pca_id, set()) and s in remaining and (pca_id, s) not in claimed
            ]
            slots = slots[:slots_left.get(pca_id, len(SLOTS))]
            dropped = [s for s in wanted if s not in slots]
            if dropped:
                warnings.append(AllocationWarning(
                    kind=WARN_SUBSTITUTION_CONFLICT,
                    message=f"{pca_id} cannot cover slots {dropped} for {need.name}",
                    team=need.team,
                    details={"floating_pca_id": pca_id, "slots": dropped, "key": need.key},
                ))
            if slots:
                picks.append({"floating_pca_id": pca_id, "slots": slots})
                slots_left[pca_id] = slots_left.get(pca_id, len(SLOTS)) - len(slots)
                for slot in slots:
                    claimed.add((pca_id, slot))
                    remaining.remove(slot)
        final[need.key] = picks

    for need in needs:
        if need.key in user_selections:
            continue
        remaining = list(need.missing_slots)
        final[need.key] = _auto_select(need, candidates_by_key.get(need.key, []), claimed, remaining, slots_left)

    for need in needs:
        covered = {s for pick in final.get(need.key, []) for s in pick["slots"]}
        unmet = [s for s in need.missing_slots if s not in covered]
        if unmet:
            warnings.append(AllocationWarning(
                kind=WARN_UNMET_SUBSTITUTION,
                message=f"{need.name} slots {unmet} have no floating cover",
                team=need.team,
                details={"key": need.key, "slots": unmet},
            ))
    return final, warnings


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def run_step2(
    staff: List[Staff],
    overrides: OverrideStore,
    weekday: str,
    special_programs: Optional[List[SpecialProgram]] = None,
    spt_allocations: Optional[List[SPTAllocation]] = None,
    pca_preferences: Optional[List[PCAPreference]] = None,
    resolvers: Optional[ResolverSet] = None,
    previous_spt_teams: Optional[Dict[str, str]] = None,
) -> Step2Result:
    """
    Allocate therapists and non-floating PCAs for one day.

    `overrides` is updated in place (program overrides, substitution links).
    On cancellation it is restored to its state at entry before
    StepCancelled propagates.
    """
    resolvers = resolvers or ResolverSet()
    entry_snapshot = overrides.snapshot()
    active_programs = [p for p in (special_programs or []) if p.is_active_on(weekday)]
    spt_today = {a.staff_id: a for a in (spt_allocations or []) if a.applies_on(weekday)}
    preferences = {p.team: p for p in (pca_preferences or [])}

    try:
        await _resolve_program_and_spt_edits(staff, overrides, active_programs, spt_today, resolvers)

        result = Step2Result()
        result.therapist_allocations = allocate_therapists(
            staff, overrides, weekday, active_programs, spt_today, previous_spt_teams,
        )
        floating_rows, program_warnings = allocate_program_pcas(staff, overrides, weekday, active_programs)
        result.warnings.extend(program_warnings)
        non_floating_rows, needs = allocate_non_floating_pcas(staff, overrides, active_programs)
        result.substitution_needs = needs

        candidates_by_key = {
            need.key: rank_substitution_candidates(need, staff, overrides, floating_rows, preferences)
            for need in needs
        }

        user_selections: Optional[Dict[str, List[Dict[str, Any]]]] = None
        if needs and resolvers.substitution and needs_escalation(needs, candidates_by_key):
            result.escalated = True
            answer = await call_resolver(resolvers.substitution, needs, candidates_by_key)
            if answer is None or answer is CANCEL:
                raise StepCancelled("substitution")
            if answer is not SKIP and isinstance(answer, dict):
                user_selections = answer

        slots_left = {
            s.id: _slots_left(s, overrides, floating_rows.get(s.id))
            for s in staff if s.is_pca and s.floating
        }
        selections, sub_warnings = resolve_substitutions(needs, candidates_by_key, user_selections, slots_left)
        result.warnings.extend(sub_warnings)
        result.substitution_selections = selections

        # Step 2 rebuilds its own links; stale links to today's targets go too
        overrides.remove_substitutions_from_step(STEP_THERAPIST)
        overrides.remove_substitutions_targeting([n.key for n in needs])
        staff_by_id = {s.id: s for s in staff}
        need_by_key = {n.key: n for n in needs}
        for key, picks in selections.items():
            need = need_by_key[key]
            for pick in picks:
                pca_id = pick["floating_pca_id"]
                overrides.apply_substitution(
                    pca_id, need.team, need.non_floating_pca_id, need.name, pick["slots"], STEP_THERAPIST,
                )
                row = floating_rows.get(pca_id)
                if row is None:
                    member = staff_by_id[pca_id]
                    fte = effective_fte(member, overrides.get(pca_id))
                    row = PCAAllocation(
                        staff_id=pca_id, team=need.team, fte_pca=fte, fte_remaining=fte,
                        invalid_slot=_invalid_slot(member, overrides),
                    )
                    floating_rows[pca_id] = row
                for slot in pick["slots"]:
                    row.set_slot(slot, need.team)
                row.recompute_remaining()

        result.pca_allocations = non_floating_rows + [floating_rows[k] for k in sorted(floating_rows)]
    except StepCancelled:
        overrides.restore(entry_snapshot)
        logger.info("Step 2 cancelled, overrides restored")
        raise

    total_pt = sum(r.fte_therapist for r in result.therapist_allocations)
    logger.info(
        f"Step 2 complete: {len(result.therapist_allocations)} therapist rows "
        f"(PT {total_pt:.2f}), {len(result.pca_allocations)} PCA rows, "
        f"{len(needs)} substitution need(s), {len(result.warnings)} warning(s)"
    )
    return result
