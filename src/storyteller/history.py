"""Undo/redo stacks of full conversation snapshots."""
from __future__ import annotations

import logging
from typing import List, Optional

from .state import ConversationState

logger = logging.getLogger(__name__)


class HistoryManager:
    """Snapshot stacks around every state mutation.

    Snapshots are :class:`ConversationState` values, which are immutable, so
    pushing the live state never aliases anything a later mutation can touch.
    """

    def __init__(self, max_depth: Optional[int] = None) -> None:
        if max_depth is not None and max_depth < 1:
            raise ValueError("max_depth must be >= 1 or None")
        self.max_depth = max_depth
        self._undo: List[ConversationState] = []
        self._redo: List[ConversationState] = []

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def depth(self) -> int:
        return len(self._undo)

    def begin_mutation(self, current: ConversationState) -> None:
        """Record ``current`` before it is replaced. Invalidates redo."""
        self._redo.clear()
        self._undo.append(current)
        if self.max_depth is not None and len(self._undo) > self.max_depth:
            del self._undo[: len(self._undo) - self.max_depth]

    def undo(self, current: ConversationState) -> Optional[ConversationState]:
        if not self._undo:
            return None
        previous = self._undo.pop()
        self._redo.append(current)
        logger.debug("undo: %d left, %d redoable", len(self._undo), len(self._redo))
        return previous

    def redo(self, current: ConversationState) -> Optional[ConversationState]:
        if not self._redo:
            return None
        following = self._redo.pop()
        self._undo.append(current)
        logger.debug("redo: %d undoable, %d left", len(self._undo), len(self._redo))
        return following

    def clear_all(self, current: ConversationState, *, clear_context: bool = False) -> ConversationState:
        """Drop all history and the chat. Not undoable."""
        self._undo.clear()
        self._redo.clear()
        if clear_context:
            return ConversationState()
        return current.with_messages(())
