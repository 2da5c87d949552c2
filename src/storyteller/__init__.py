"""Conversation state engine for co-writing a story with a text model.

The core lives in plain modules (``contract``, ``merge``, ``turn``,
``history``, ``codec``, ``session``); ``server.py`` wraps one session in a
FastAPI application (see :func:`create_app`).

Typical usage
-------------
from storyteller import StorySession
from storyteller.backend import OllamaBackend

session = StorySession(OllamaBackend(), model_id="cogito:8b")
outcome = await session.run_turn("Remember that Sir Reginald is a knight")

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = [
    "create_app",
    "__version__",
    "get_version",
    "ConversationState",
    "ChatMessage",
    "Sender",
    "StorySession",
    "TurnError",
    "TurnResult",
    "MessagePolicy",
    "ImportFailure",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__

from .codec import ImportFailure, MessagePolicy  # noqa: E402
from .session import StorySession  # noqa: E402
from .state import ChatMessage, ConversationState, Sender  # noqa: E402
from .turn import TurnError, TurnResult  # noqa: E402

# ---------------------------------------------------------------------
# App factory export (friendly import error if FastAPI is missing)
# ---------------------------------------------------------------------
try:
    from .server import create_app as _create_app
except ImportError as _exc:
    # Defer the failure until someone actually calls create_app(), so the
    # core engine stays importable without the web stack.
    _create_app = None
    _server_import_error: ImportError | None = _exc
else:
    _server_import_error = None


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`storyteller.server.create_app`. If that module
    cannot be imported, the original ImportError is raised here.
    """
    if _create_app is None:
        raise ImportError(
            "storyteller.server could not be imported; install the package "
            "with its web dependencies (fastapi, uvicorn)."
        ) from _server_import_error
    return _create_app(*args, **kwargs)
