"""Immutable conversation state: chat messages, context facts and story text."""
from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple


class Sender(str, Enum):
    USER = "user"
    AGENT = "agent"


@dataclass(frozen=True)
class ChatMessage:
    """One chat line. ``id`` only needs to be unique and increasing within a session."""

    id: int
    sender: Sender
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "sender": self.sender.value, "text": self.text}


@dataclass(frozen=True)
class ConversationState:
    """The unit that gets snapshotted, undone, redone, exported and imported.

    Sequences are tuples so a snapshot can be shared freely: nothing can
    mutate it in place after it has been pushed on a history stack.
    """

    messages: Tuple[ChatMessage, ...] = ()
    context: Tuple[str, ...] = ()
    story: str = ""

    def with_messages(self, messages: Iterable[ChatMessage]) -> "ConversationState":
        return replace(self, messages=tuple(messages))

    def with_context(self, context: Iterable[str]) -> "ConversationState":
        return replace(self, context=tuple(context))


class MessageIds:
    """Monotonic id source owned by a session."""

    def __init__(self, start: int = 1) -> None:
        self._counter: Iterator[int] = itertools.count(start)
        self._last = start - 1

    def __call__(self) -> int:
        self._last = next(self._counter)
        return self._last

    def advance_past(self, messages: Iterable[ChatMessage]) -> None:
        """Make sure future ids are larger than any id in ``messages``."""
        highest: Optional[int] = max((m.id for m in messages), default=None)
        if highest is not None and highest > self._last:
            self._counter = itertools.count(highest + 1)
            self._last = highest
