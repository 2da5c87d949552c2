"""One conversational exchange: prompt assembly, backend call, delta application."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Literal, Optional, Sequence, Union

from .backend import Backend, BackendError
from .contract import OutputContract, ParseError, default_contract
from .merge import append_story, extract_items, merge
from .prompts import EMPTY_MARKER, INSTRUCTION, INVALID_OUTPUT_PLACEHOLDER, SYSTEM_PROMPT
from .state import ChatMessage, ConversationState, MessageIds, Sender

logger = logging.getLogger(__name__)

TurnErrorReason = Literal["empty-input", "busy", "backend-unavailable", "invalid-output"]


@dataclass(frozen=True)
class TurnResult:
    state: ConversationState
    agent_message: ChatMessage


@dataclass(frozen=True)
class TurnError:
    """Why a turn did not produce a normal reply.

    ``state`` is only set for ``invalid-output``: the user's message was sent
    and a placeholder agent message stands in for the unusable reply.
    """

    reason: TurnErrorReason
    detail: str = ""
    state: Optional[ConversationState] = None


# -----------------------------
# Prompt rendering
# -----------------------------
def render_history(messages: Sequence[ChatMessage], labels: Dict[Sender, str]) -> str:
    return "\n".join(f"{labels[m.sender]}: {m.text}" for m in messages)


def build_prompt(
    messages: Sequence[ChatMessage],
    context: Sequence[str],
    story: str,
    instruction: str,
    *,
    agent_label: str = "Storyteller",
) -> str:
    """Render the full user prompt for one turn (deterministic)."""
    labels = {Sender.USER: "User", Sender.AGENT: agent_label}
    sections = [
        "Chat History:\n" + render_history(messages, labels),
        "Current Story Context:\n" + ("\n".join(context) if context else EMPTY_MARKER),
        "Current Story:\n" + (story or EMPTY_MARKER),
        instruction.strip(),
    ]
    return "\n\n---\n".join(sections)


# -----------------------------
# Executor
# -----------------------------
class TurnExecutor:
    """Runs a single turn against a backend. Holds no conversation state."""

    def __init__(
        self,
        backend: Backend,
        *,
        contract: Optional[OutputContract] = None,
        system_prompt: str = SYSTEM_PROMPT,
        instruction: str = INSTRUCTION,
        model_id: str = "",
        next_id: Optional[Callable[[], int]] = None,
        agent_label: str = "Storyteller",
    ) -> None:
        self.backend = backend
        self.contract = contract or default_contract()
        self.system_prompt = system_prompt
        self.instruction = instruction
        self.model_id = model_id
        self.next_id = next_id or MessageIds()
        self.agent_label = agent_label

    async def run_turn(self, state: ConversationState, user_text: str) -> Union[TurnResult, TurnError]:
        if not (user_text or "").strip():
            return TurnError("empty-input")

        user_msg = ChatMessage(self.next_id(), Sender.USER, user_text)
        messages = state.messages + (user_msg,)
        prompt = build_prompt(
            messages, state.context, state.story, self.instruction, agent_label=self.agent_label
        )

        try:
            raw = await self.backend.generate(
                self.model_id, self.system_prompt, prompt, self.contract.schema
            )
        except BackendError as e:
            logger.warning("Backend unavailable: %s", e)
            return TurnError("backend-unavailable", str(e))
        except Exception as e:
            logger.exception("Backend call failed: %s", e)
            return TurnError("backend-unavailable", f"{type(e).__name__}: {e}")

        parsed = self.contract.parse(raw)
        if isinstance(parsed, ParseError):
            logger.warning("Invalid model output (%s): %s", parsed.reason, parsed.detail)
            placeholder = ChatMessage(self.next_id(), Sender.AGENT, INVALID_OUTPUT_PLACEHOLDER)
            detail = f"{parsed.reason}: {parsed.detail}" if parsed.detail else parsed.reason
            return TurnError(
                "invalid-output",
                detail,
                state=state.with_messages(messages + (placeholder,)),
            )

        agent_msg = ChatMessage(self.next_id(), Sender.AGENT, parsed.response)
        context = merge(state.context, extract_items(parsed.context_delta))
        next_state = ConversationState(
            messages=messages + (agent_msg,),
            context=tuple(context),
            story=append_story(state.story, parsed.story_delta),
        )
        if context is not state.context:
            logger.debug("Context grew %d -> %d facts", len(state.context), len(context))
        return TurnResult(next_state, agent_msg)
