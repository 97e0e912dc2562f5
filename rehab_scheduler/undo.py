"""
undo.py — Bounded undo / redo history

A checkpoint holds deep copies of only the state slices an edit touched,
taken before and after the edit. Undo re-applies `before`, redo re-applies
`after`. Pushing a new checkpoint drops everything on the redo stack.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rehab_scheduler.schedule_config import MAX_UNDO_DEPTH

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    label: str
    before: Dict[str, Any]
    after: Dict[str, Any]


class UndoHistory:

    def __init__(self, max_depth: int = MAX_UNDO_DEPTH):
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self.max_depth = max_depth
        self._undo: List[Checkpoint] = []
        self._redo: List[Checkpoint] = []

    def push(self, label: str, before: Dict[str, Any], after: Dict[str, Any]) -> Checkpoint:
        checkpoint = Checkpoint(label, before, after)
        self._undo.append(checkpoint)
        if len(self._undo) > self.max_depth:
            dropped = self._undo.pop(0)
            logger.debug(f"Undo history full, dropped '{dropped.label}'")
        self._redo.clear()
        return checkpoint

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> Optional[Checkpoint]:
        if not self._undo:
            return None
        checkpoint = self._undo.pop()
        self._redo.append(checkpoint)
        return checkpoint

    def redo(self) -> Optional[Checkpoint]:
        if not self._redo:
            return None
        checkpoint = self._redo.pop()
        self._undo.append(checkpoint)
        return checkpoint

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def labels(self) -> List[str]:
        return [c.label for c in self._undo]

    def __len__(self) -> int:
        return len(self._undo)
