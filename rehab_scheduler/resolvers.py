"""
resolvers.py — Human-interaction resolver contract

The Step 2 / Step 3 engines suspend at decision points and await a resolver
callback supplied by the caller (dialog, CLI prompt, scripted test double).
A resolver may be a plain function or a coroutine function.

Return shapes
─────────────
  value   the decision (team, selection map, overrides, updates)
  SKIP    apply the best automatic match; an empty dict means the same
  CANCEL  abort the whole step run and roll back (None also cancels for
          the special-program, substitution and SPT resolvers)
  BACK    SPT final edit only: re-open the special-program resolver

Resolver signatures
───────────────────
  special_program(active_programs, staff_pool)       → {staff_id: overrides}
  substitution(needs, candidates_by_key)             → {key: [{floating_pca_id, slots}]}
  spt_final_edit(spt_staff, current_allocations)     → {staff_id: updates}
  tie_break(tied_teams, pending_fte)                 → team
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class _Sentinel:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name


SKIP = _Sentinel("SKIP")
CANCEL = _Sentinel("CANCEL")
BACK = _Sentinel("BACK")


@dataclass
class ResolverSet:
    special_program: Optional[Callable[..., Any]] = None
    substitution: Optional[Callable[..., Any]] = None
    spt_final_edit: Optional[Callable[..., Any]] = None
    tie_break: Optional[Callable[..., Any]] = None


async def call_resolver(resolver: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async resolver and return its resolution."""
    result = resolver(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def is_navigation_back(result: Any) -> bool:
    return result is BACK or (isinstance(result, dict) and result.get("nav") == "back")


# ---------------------------------------------------------------------------
# Test / CLI doubles
# ---------------------------------------------------------------------------

class ScriptedResolver:
    """
    Replays a fixed list of answers, one per call, then `default`.
    Every call's arguments are kept in `calls` for assertions.
    """

    def __init__(self, answers: Optional[List[Any]] = None, default: Any = SKIP):
        self.answers = list(answers or [])
        self.default = default
        self.calls: List[tuple] = []

    def __call__(self, *args: Any) -> Any:
        self.calls.append(args)
        if self.answers:
            return self.answers.pop(0)
        return self.default


def interactive_tie_break(tied_teams: List[str], pending_fte: float) -> Any:
    """
    Prompt on stdin for the team to serve first.
    Non-interactive environments fall back to SKIP (enumeration order).
    """
    options = ", ".join(f"{i + 1}={t}" for i, t in enumerate(tied_teams))
    try:
        ans = input(f"\n▶ Tie at {pending_fte:.2f} FTE between {options} [number/team, c=cancel]: ")
    except (EOFError, KeyboardInterrupt):
        return SKIP
    ans = ans.strip()
    if ans.lower() in ("c", "cancel"):
        return CANCEL
    if ans.isdigit() and 1 <= int(ans) <= len(tied_teams):
        return tied_teams[int(ans) - 1]
    for team in tied_teams:
        if ans.upper() == team:
            return team
    return SKIP


def interactive_substitution(needs: List[Any], candidates_by_key: Dict[str, List[Any]]) -> Any:
    """Prompt for one floating PCA per substitution need (Enter = automatic)."""
    selections: Dict[str, List[Dict[str, Any]]] = {}
    for need in needs:
        candidates = candidates_by_key.get(need.key, [])
        if not candidates:
            continue
        listing = ", ".join(f"{i + 1}={c.name}" for i, c in enumerate(candidates))
        try:
            ans = input(
                f"\n▶ {need.team} {need.name} missing slots {need.missing_slots}: {listing} [Enter=auto, c=cancel]: "
            ).strip().lower()
        except (EOFError, KeyboardInterrupt):
            return SKIP
        if ans in ("c", "cancel"):
            return CANCEL
        if ans.isdigit() and 1 <= int(ans) <= len(candidates):
            chosen = candidates[int(ans) - 1]
            selections[need.key] = [{
                "floating_pca_id": chosen.id,
                "slots": list(chosen.coverable_slots),
            }]
    return selections
