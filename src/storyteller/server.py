"""FastAPI application exposing one storytelling session."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .backend import Backend, BackendError, create_backend
from .codec import ImportFailure, MessagePolicy
from .config import load_config
from .prompts import INSTRUCTION, SYSTEM_PROMPT
from .session import StorySession
from .turn import TurnError


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(..., description="The user's next message.")


class ModelRequest(BaseModel):
    model: str = Field(..., min_length=1)


class ContextRequest(BaseModel):
    text: str = Field(..., description="One or more facts, one per line.")


class ClearRequest(BaseModel):
    clear_context: bool = Field(default=False)


class ImportRequest(BaseModel):
    document: Union[Dict[str, Any], str]
    messages: MessagePolicy = Field(default=MessagePolicy.KEEP)


class MessageOut(BaseModel):
    id: int
    sender: str
    text: str


class StateOut(BaseModel):
    messages: List[MessageOut]
    context: List[str]
    story: str
    can_undo: bool
    can_redo: bool
    busy: bool


class ChatResponse(BaseModel):
    response: str
    error: Optional[str] = None
    detail: Optional[str] = None
    state: StateOut


# -----------------------------
# Utilities
# -----------------------------
_TURN_STATUS = {"empty-input": 400, "busy": 409, "backend-unavailable": 502}


def _state_out(session: StorySession) -> StateOut:
    st = session.state
    return StateOut(
        messages=[MessageOut(**m.to_dict()) for m in st.messages],
        context=list(st.context),
        story=st.story,
        can_undo=session.can_undo,
        can_redo=session.can_redo,
        busy=session.busy,
    )


def _make_session(cfg: Dict[str, Any], backend: Backend) -> StorySession:
    prompt_cfg = cfg.get("prompt", {}) or {}
    max_depth = (cfg.get("history", {}) or {}).get("max_depth")
    return StorySession(
        backend,
        model_id=str((cfg.get("model", {}) or {}).get("default") or ""),
        system_prompt=str(prompt_cfg.get("system_prompt") or SYSTEM_PROMPT).strip(),
        instruction=str(prompt_cfg.get("instruction") or INSTRUCTION).strip(),
        agent_label=str(prompt_cfg.get("agent_label") or "Storyteller"),
        max_history=int(max_depth) if max_depth else None,
    )


def _public_config(cfg: Dict[str, Any], session: StorySession) -> Dict[str, Any]:
    """Settings a client can show: the backend kind but not where it lives."""
    backend_cfg = cfg.get("backend", {}) or {}
    executor = session.executor
    return {
        "backend": {"kind": backend_cfg.get("kind", "ollama")},
        "model": {**(cfg.get("model", {}) or {}), "selected": session.model_id},
        "history": dict(cfg.get("history", {}) or {}),
        "prompt": {
            "agent_label": executor.agent_label,
            "system_prompt": executor.system_prompt,
            "instruction": executor.instruction,
        },
    }


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    backend: Optional[Backend] = None,
    session: Optional[StorySession] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # CORS
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    if session is None:
        session = _make_session(cfg, backend or create_backend(cfg))

    app = FastAPI(title="Storyteller Server", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.session = session

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True, "model": session.model_id, "busy": session.busy}

    @app.get("/config")
    async def get_config() -> Dict[str, Any]:
        return _public_config(cfg, session)

    @app.get("/models")
    async def models() -> Dict[str, Any]:
        try:
            names = await session.backend.list_models()
        except BackendError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"models": names, "selected": session.model_id}

    @app.post("/model")
    async def select_model(req: ModelRequest) -> Dict[str, Any]:
        session.model_id = req.model
        return {"selected": session.model_id}

    @app.get("/state", response_model=StateOut)
    async def state() -> StateOut:
        return _state_out(session)

    @app.post("/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest) -> ChatResponse:
        outcome = await session.run_turn(req.message)
        if isinstance(outcome, TurnError):
            if outcome.reason in _TURN_STATUS:
                raise HTTPException(
                    status_code=_TURN_STATUS[outcome.reason],
                    detail={"reason": outcome.reason, "detail": outcome.detail},
                )
            # invalid-output: the placeholder reply is already in the chat
            return ChatResponse(
                response=session.state.messages[-1].text,
                error=outcome.reason,
                detail=outcome.detail,
                state=_state_out(session),
            )
        return ChatResponse(response=outcome.agent_message.text, state=_state_out(session))

    @app.post("/undo", response_model=StateOut)
    async def undo() -> StateOut:
        if session.undo() is None:
            raise HTTPException(status_code=409, detail="Nothing to undo.")
        return _state_out(session)

    @app.post("/redo", response_model=StateOut)
    async def redo() -> StateOut:
        if session.redo() is None:
            raise HTTPException(status_code=409, detail="Nothing to redo.")
        return _state_out(session)

    @app.post("/clear", response_model=StateOut)
    async def clear(req: Optional[ClearRequest] = None) -> StateOut:
        session.clear_all(clear_context=bool(req and req.clear_context))
        return _state_out(session)

    @app.post("/context")
    async def add_context(req: ContextRequest) -> Dict[str, Any]:
        changed = session.add_manual_context(req.text)
        return {"changed": changed, "state": _state_out(session)}

    @app.delete("/context/{index}", response_model=StateOut)
    async def delete_context(index: int) -> StateOut:
        try:
            session.delete_context_item(index)
        except IndexError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return _state_out(session)

    @app.get("/export")
    async def export(include_messages: bool = False) -> Dict[str, Any]:
        return session.export(include_messages=include_messages)

    @app.post("/import", response_model=StateOut)
    async def import_document(req: ImportRequest) -> StateOut:
        result = session.import_document(req.document, messages=req.messages)
        if isinstance(result, ImportFailure):
            raise HTTPException(status_code=400, detail={"reason": result.reason, "detail": result.detail})
        return _state_out(session)

    return app
