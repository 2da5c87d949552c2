"""A single interactive storytelling session.

All changes to the conversation go through :class:`StorySession`; each
mutating method records its own undo snapshot, so no caller can forget to.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from .backend import Backend
from .codec import ImportFailure, MessagePolicy, export_state, import_state, load_file, save_file
from .contract import OutputContract
from .history import HistoryManager
from .merge import extract_items, merge
from .prompts import INSTRUCTION, SYSTEM_PROMPT
from .state import ConversationState, MessageIds
from .turn import TurnError, TurnExecutor, TurnResult

logger = logging.getLogger(__name__)


class StorySession:
    """Owns the live state, both history stacks and the turn-in-flight flag.

    Sessions share nothing; create one per interactive user.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        model_id: str = "",
        contract: Optional[OutputContract] = None,
        system_prompt: str = SYSTEM_PROMPT,
        instruction: str = INSTRUCTION,
        agent_label: str = "Storyteller",
        max_history: Optional[int] = None,
        state: Optional[ConversationState] = None,
    ) -> None:
        self._state = state or ConversationState()
        self._ids = MessageIds()
        self._ids.advance_past(self._state.messages)
        self.history = HistoryManager(max_history)
        self.executor = TurnExecutor(
            backend,
            contract=contract,
            system_prompt=system_prompt,
            instruction=instruction,
            model_id=model_id,
            next_id=self._ids,
            agent_label=agent_label,
        )
        self._in_flight = False

    # -----------------------------
    # Read-only views
    # -----------------------------
    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    @property
    def backend(self) -> Backend:
        return self.executor.backend

    @property
    def model_id(self) -> str:
        return self.executor.model_id

    @model_id.setter
    def model_id(self, value: str) -> None:
        self.executor.model_id = str(value)

    # -----------------------------
    # Internals
    # -----------------------------
    def _commit(self, before: ConversationState, after: ConversationState) -> None:
        self.history.begin_mutation(before)
        self._state = after

    @contextmanager
    def _turn_slot(self) -> Iterator[None]:
        self._in_flight = True
        try:
            yield
        finally:
            self._in_flight = False

    # -----------------------------
    # Turns
    # -----------------------------
    async def run_turn(self, text: str) -> Union[TurnResult, TurnError]:
        """Send ``text`` and apply the reply. At most one turn runs at a time."""
        if self._in_flight:
            logger.info("Rejected turn: another turn is in flight")
            return TurnError("busy")

        before = self._state
        with self._turn_slot():
            outcome = await self.executor.run_turn(before, text)

        if isinstance(outcome, TurnResult):
            self._commit(before, outcome.state)
        elif outcome.state is not None:
            # invalid-output still changes the chat (user message + placeholder)
            self._commit(before, outcome.state)
        return outcome

    # -----------------------------
    # History
    # -----------------------------
    def undo(self) -> Optional[ConversationState]:
        previous = self.history.undo(self._state)
        if previous is not None:
            self._state = previous
        return previous

    def redo(self) -> Optional[ConversationState]:
        following = self.history.redo(self._state)
        if following is not None:
            self._state = following
        return following

    def clear_all(self, *, clear_context: bool = False) -> ConversationState:
        self._state = self.history.clear_all(self._state, clear_context=clear_context)
        logger.info("Session cleared (context %s)", "cleared" if clear_context else "kept")
        return self._state

    # -----------------------------
    # Manual edits
    # -----------------------------
    def add_manual_context(self, text: str) -> bool:
        """Merge user-typed facts (one per line). Returns False when nothing was new."""
        merged = merge(self._state.context, extract_items(text))
        if merged is self._state.context:
            return False
        self._commit(self._state, self._state.with_context(merged))
        return True

    def delete_context_item(self, index: int) -> str:
        context = self._state.context
        if not 0 <= index < len(context):
            raise IndexError(f"context index {index} out of range (0..{len(context) - 1})")
        removed = context[index]
        self._commit(self._state, self._state.with_context(context[:index] + context[index + 1:]))
        return removed

    # -----------------------------
    # Import / export
    # -----------------------------
    def export(self, *, include_messages: bool = False) -> Dict[str, Any]:
        return export_state(self._state, include_messages=include_messages)

    def import_document(
        self,
        document: Any,
        *,
        messages: MessagePolicy = MessagePolicy.KEEP,
    ) -> Union[ConversationState, ImportFailure]:
        result = import_state(document, self._state.messages, messages=messages)
        return self._apply_import(result)

    def save(self, path: Union[str, Path], *, include_messages: bool = True) -> Path:
        return save_file(path, self._state, include_messages=include_messages)

    def load(
        self,
        path: Union[str, Path],
        *,
        messages: MessagePolicy = MessagePolicy.RESTORE,
    ) -> Union[ConversationState, ImportFailure]:
        return self._apply_import(load_file(path, self._state.messages, messages=messages))

    def _apply_import(
        self, result: Union[ConversationState, ImportFailure]
    ) -> Union[ConversationState, ImportFailure]:
        if isinstance(result, ImportFailure):
            logger.warning("Import rejected (%s): %s", result.reason, result.detail)
            return result
        if result == self._state:
            return self._state
        self._ids.advance_past(result.messages)
        self._commit(self._state, result)
        return result
