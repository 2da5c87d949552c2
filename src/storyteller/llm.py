"""Backend that runs a local GGUF model through llama.cpp."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .backend import BackendError

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 50
    repeat_penalty: float = 1.1


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


# -----------------------------
# GGUF backend
# -----------------------------

class GGUFBackend:
    """Serve structured story replies from a single llama.cpp model.

    The loaded weights are the only model available, so ``model_id`` passed to
    :meth:`generate` is informational.
    """

    def __init__(self, model_path: str, *, llama: Any = None, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        llama : Any
            Pre-built ``llama_cpp.Llama`` (or compatible) instance. When given,
            nothing is loaded from disk.
        kwargs : Any
            Passed to llama_cpp.Llama with some smart defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        self.model_path = model_path
        self.model_name = Path(model_path).stem or "gguf"
        self._llama = llama if llama is not None else self._load(model_path, kwargs)

        self._gen_cfg = GenerationConfig(
            max_new_tokens=int(os.environ.get("LLM_MAX_NEW", "512")),
            temperature=float(os.environ.get("LLM_TEMP", "0.7")),
            top_p=float(os.environ.get("LLM_TOP_P", "0.95")),
            top_k=int(os.environ.get("LLM_TOP_K", "50")),
            repeat_penalty=float(os.environ.get("LLM_REPEAT_PEN", "1.1")),
        )

    @staticmethod
    def _load(model_path: str, kwargs: Dict[str, Any]) -> Any:
        # Lazy import: llama-cpp-python is an optional extra.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            return Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Network filesystems sometimes refuse memory-mapping.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            return Llama(model_path=model_path, **kwargs)

    # -------------------------
    # Backend protocol
    # -------------------------
    async def generate(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        output_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        if model_id and model_id != self.model_name:
            logger.debug("GGUF backend ignores model id %r (serving %r)", model_id, self.model_name)
        return await asyncio.to_thread(self._complete, system_prompt, user_prompt, output_schema)

    async def list_models(self) -> List[str]:
        return [self.model_name]

    # -------------------------
    # Internals
    # -------------------------
    def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        output_schema: Optional[Dict[str, Any]],
    ) -> str:
        cfg = self._gen_cfg
        kwargs: Dict[str, Any] = dict(
            messages=[
                {"role": "system", "content": (system_prompt or "").strip()},
                {"role": "user", "content": (user_prompt or "").strip()},
            ],
            max_tokens=cfg.max_new_tokens,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            top_k=cfg.top_k,
            repeat_penalty=cfg.repeat_penalty,
        )
        if output_schema is not None:
            kwargs["response_format"] = {"type": "json_object", "schema": output_schema}

        try:
            out = self._llama.create_chat_completion(**kwargs)
            text = out["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Unexpected llama.cpp completion shape: {e}") from e
        except Exception as e:
            logger.exception("LLM completion failed: %s", e)
            raise BackendError(f"llama.cpp completion failed: {e}") from e
        return (text or "").strip()


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> GGUFBackend:
    """Create GGUFBackend from a config dict (e.g., loaded YAML)."""
    b_cfg = (cfg or {}).get("backend", {}) if isinstance(cfg, dict) else {}
    model_dir = b_cfg.get("model_dir")
    model_path = b_cfg.get("model_path")
    if model_dir and model_path and not os.path.isabs(model_path):
        model_path = os.path.join(model_dir, model_path)

    if not model_path or not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at: {model_path!r}")

    params = {
        "n_ctx": b_cfg.get("n_ctx", 4096),
        "n_threads": b_cfg.get("n_threads"),
        "n_gpu_layers": b_cfg.get("n_gpu_layers"),
        "use_mmap": b_cfg.get("use_mmap", True),
    }
    # Remove None entries (llama.cpp is picky)
    params = {k: v for k, v in params.items() if v is not None}

    return GGUFBackend(model_path=model_path, **params)
