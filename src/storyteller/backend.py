"""Text-generation backends the turn executor can call.

A backend only has to implement :class:`Backend`. The Ollama adapter talks
HTTP through :mod:`httpx`; the GGUF adapter lives in :mod:`storyteller.llm`.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_HOST = "http://localhost:11434"


class BackendError(RuntimeError):
    """Raised when the backend cannot be reached or its reply is unusable."""


class Backend(Protocol):
    async def generate(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        output_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        ...

    async def list_models(self) -> List[str]:
        ...


# -----------------------------
# Ollama over HTTP
# -----------------------------
class OllamaBackend:
    """Minimal async client for Ollama's ``/api/generate`` and ``/api/tags``."""

    def __init__(
        self,
        host: Optional[str] = None,
        *,
        timeout: float = 120.0,
        options: Optional[Mapping[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.host = (host or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_HOST).rstrip("/")
        self.timeout = httpx.Timeout(float(timeout), connect=5.0)
        self.options = dict(options or {})
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.host, timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as e:
            raise BackendError(f"Ollama {method} {path} failed: {e}") from e
        except ValueError as e:
            raise BackendError(f"Ollama {method} {path} returned invalid JSON: {e}") from e

    async def generate(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        output_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": model_id,
            "prompt": user_prompt,
            "system": system_prompt,
            "stream": False,
        }
        if output_schema is not None:
            payload["format"] = output_schema
        if self.options:
            payload["options"] = self.options

        logger.debug("POST %s/api/generate model=%s chars=%d", self.host, model_id, len(user_prompt))
        data = await self._request("POST", "/api/generate", json=payload)
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise BackendError("Ollama reply carries no 'response' text")
        return text

    async def list_models(self) -> List[str]:
        data = await self._request("GET", "/api/tags")
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise BackendError("Ollama model listing has no 'models' array")
        return [str(m["name"]) for m in models if isinstance(m, dict) and m.get("name")]


# -----------------------------
# Factory
# -----------------------------
def create_backend(cfg: Dict[str, Any]) -> Backend:
    """Create the backend named by ``backend.kind`` (``ollama`` or ``gguf``)."""
    b_cfg = (cfg or {}).get("backend", {}) if isinstance(cfg, dict) else {}
    kind = str(b_cfg.get("kind", "ollama")).lower()

    if kind == "ollama":
        return OllamaBackend(
            b_cfg.get("host"),
            timeout=float(b_cfg.get("timeout", 120.0)),
            options=b_cfg.get("options"),
        )
    if kind == "gguf":
        from .llm import create_from_config

        return create_from_config(cfg)
    raise ValueError(f"Unknown backend kind: {kind!r}")
