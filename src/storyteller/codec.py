"""JSON import/export of conversation state (atomic file writes)."""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Sequence, Tuple, Union

from .state import ChatMessage, ConversationState, Sender

DOCUMENT_VERSION = 1

_SENDER_ALIASES = {
    "user": Sender.USER,
    "agent": Sender.AGENT,
    "storyteller": Sender.AGENT,
    "assistant": Sender.AGENT,
}


class MessagePolicy(str, Enum):
    """What happens to the chat when a document is imported."""

    KEEP = "keep"        # caller's current messages stay
    CLEAR = "clear"      # chat is emptied
    RESTORE = "restore"  # messages come from the document


@dataclass(frozen=True)
class ImportFailure:
    reason: Literal["malformed-json", "invalid-shape"]
    detail: str = ""


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _decode(document: Any) -> Union[Mapping[str, Any], ImportFailure]:
    if isinstance(document, (str, bytes, bytearray)):
        try:
            document = json.loads(document)
        # JSONDecodeError and UnicodeDecodeError are ValueErrors; so is an
        # integer literal past the interpreter's digit limit.
        except (ValueError, RecursionError) as e:
            return ImportFailure("malformed-json", str(e))
    if not isinstance(document, Mapping):
        return ImportFailure("invalid-shape", f"expected an object, got {type(document).__name__}")
    return document


def _check_context(value: Any) -> Union[Tuple[str, ...], ImportFailure]:
    if not isinstance(value, list):
        return ImportFailure("invalid-shape", "'context' must be a list of strings")
    seen = set()
    for i, item in enumerate(value):
        if not isinstance(item, str):
            return ImportFailure("invalid-shape", f"context[{i}] is {type(item).__name__}, not a string")
        key = item.strip()
        if not key:
            return ImportFailure("invalid-shape", f"context[{i}] is blank")
        if key in seen:
            return ImportFailure("invalid-shape", f"context[{i}] duplicates an earlier fact")
        seen.add(key)
    return tuple(value)


def _check_messages(value: Any) -> Union[Tuple[ChatMessage, ...], ImportFailure]:
    if not isinstance(value, list):
        return ImportFailure("invalid-shape", "'messages' must be a list")
    parsed: List[Tuple[Any, Sender, str]] = []
    for i, item in enumerate(value):
        if not isinstance(item, Mapping):
            return ImportFailure("invalid-shape", f"messages[{i}] is not an object")
        sender = _SENDER_ALIASES.get(str(item.get("sender", "")).lower())
        text = item.get("text")
        if sender is None or not isinstance(text, str):
            return ImportFailure("invalid-shape", f"messages[{i}] needs a known 'sender' and a string 'text'")
        parsed.append((item.get("id"), sender, text))

    ids = [p[0] for p in parsed]
    usable = all(type(i) is int for i in ids) and all(a < b for a, b in zip(ids, ids[1:]))
    if not usable:
        # Renumber when ids are missing, non-integer or out of order.
        ids = list(range(1, len(parsed) + 1))
    return tuple(ChatMessage(mid, sender, text) for mid, (_, sender, text) in zip(ids, parsed))


# -----------------------------
# Public API
# -----------------------------
def export_state(state: ConversationState, *, include_messages: bool = False) -> Dict[str, Any]:
    """Return the interchange document for ``state`` (context order verbatim)."""
    doc: Dict[str, Any] = {
        "version": DOCUMENT_VERSION,
        "context": list(state.context),
        "story": state.story,
    }
    if include_messages:
        doc["messages"] = [m.to_dict() for m in state.messages]
    return doc


def dumps(state: ConversationState, *, include_messages: bool = False) -> str:
    return json.dumps(export_state(state, include_messages=include_messages), ensure_ascii=False, indent=2)


def import_state(
    document: Any,
    current_messages: Sequence[ChatMessage] = (),
    *,
    messages: MessagePolicy = MessagePolicy.KEEP,
) -> Union[ConversationState, ImportFailure]:
    """Build the state described by ``document``.

    ``document`` is JSON text or an already-decoded mapping. Its context
    replaces any existing context; unknown top-level fields are ignored.
    Nothing is modified on failure.
    """
    decoded = _decode(document)
    if isinstance(decoded, ImportFailure):
        return decoded

    if "context" not in decoded:
        return ImportFailure("invalid-shape", "missing 'context'")
    context = _check_context(decoded["context"])
    if isinstance(context, ImportFailure):
        return context

    story = decoded.get("story", "")
    if not isinstance(story, str):
        return ImportFailure("invalid-shape", "'story' must be a string")

    policy = MessagePolicy(messages)
    if policy is MessagePolicy.RESTORE:
        restored = _check_messages(decoded.get("messages", []))
        if isinstance(restored, ImportFailure):
            return restored
        chat: Tuple[ChatMessage, ...] = restored
    elif policy is MessagePolicy.CLEAR:
        chat = ()
    else:
        chat = tuple(current_messages)

    return ConversationState(messages=chat, context=context, story=story)


def save_file(path: Union[str, Path], state: ConversationState, *, include_messages: bool = False) -> Path:
    """Write ``state`` to ``path`` atomically and return the path."""
    p = Path(path)
    _atomic_write_text(p, dumps(state, include_messages=include_messages))
    return p


def load_file(
    path: Union[str, Path],
    current_messages: Sequence[ChatMessage] = (),
    *,
    messages: MessagePolicy = MessagePolicy.KEEP,
) -> Union[ConversationState, ImportFailure]:
    try:
        raw = Path(path).read_bytes()
    except OSError as e:
        return ImportFailure("malformed-json", f"cannot read {path}: {e}")
    return import_state(raw, current_messages, messages=messages)
