"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


def reply(response: str, context: str = "", story: str = "") -> str:
    """JSON text shaped like a well-behaved model reply."""
    return json.dumps({"response": response, "context": context, "story": story})


class ScriptedBackend:
    """Backend double that returns queued replies and records every call."""

    def __init__(self, *replies: Any, models: Optional[List[str]] = None) -> None:
        self.replies = list(replies)
        self.models = models or ["cogito:8b"]
        self.calls: List[Dict[str, Any]] = []

    @property
    def last_prompt(self) -> Optional[str]:
        return self.calls[-1]["user_prompt"] if self.calls else None

    async def generate(self, model_id, system_prompt, user_prompt, output_schema=None) -> str:
        self.calls.append(
            {
                "model_id": model_id,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "output_schema": output_schema,
            }
        )
        item = self.replies.pop(0) if self.replies else reply("ok")
        if isinstance(item, BaseException):
            raise item
        return item

    async def list_models(self) -> List[str]:
        return list(self.models)


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for saved sessions during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in ["STORYTELLER_CONFIG", "OLLAMA_HOST"]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("STORYTELLER__"):
            monkeypatch.delenv(var, raising=False)
    yield
