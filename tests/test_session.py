from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import ScriptedBackend, reply
from storyteller.backend import BackendError
from storyteller.codec import ImportFailure, MessagePolicy
from storyteller.prompts import INVALID_OUTPUT_PLACEHOLDER
from storyteller.session import StorySession
from storyteller.state import ConversationState, Sender
from storyteller.turn import TurnError, TurnResult


def _run(coro):
    return asyncio.run(coro)


def test_end_to_end_scenario():
    backend = ScriptedBackend(reply("Noted!", context="Sir Reginald is a knight"))
    session = StorySession(backend, model_id="cogito:8b")

    outcome = _run(session.run_turn("Remember that Sir Reginald is a knight"))

    assert isinstance(outcome, TurnResult)
    assert outcome.agent_message.text == "Noted!"
    st = session.state
    assert [m.sender for m in st.messages] == [Sender.USER, Sender.AGENT]
    assert st.messages[0].text == "Remember that Sir Reginald is a knight"
    assert st.context == ("Sir Reginald is a knight",)
    assert session.can_undo and not session.can_redo
    assert backend.calls[0]["model_id"] == "cogito:8b"


def test_prompt_includes_history_context_and_new_message():
    backend = ScriptedBackend(
        reply("Noted!", context="Alice is a knight"),
        reply("What next?"),
    )
    session = StorySession(backend)
    _run(session.run_turn("Remember Alice"))
    _run(session.run_turn("How are you?"))

    prompt = backend.last_prompt or ""
    assert "User: Remember Alice" in prompt
    assert "Storyteller: Noted!" in prompt
    # the user's own turn is part of the history it sees
    assert "User: How are you?" in prompt
    assert "Current Story Context:\nAlice is a knight" in prompt
    assert "Current Story:\n(empty)" in prompt
    assert backend.calls[-1]["output_schema"]["required"] == ["response"]


def test_empty_prompt_context_uses_marker():
    backend = ScriptedBackend()
    session = StorySession(backend)
    _run(session.run_turn("Hello"))
    assert "Current Story Context:\n(empty)" in backend.last_prompt


def test_message_ids_are_unique_and_increasing():
    session = StorySession(ScriptedBackend())
    for text in ("one", "two", "three"):
        _run(session.run_turn(text))
    ids = [m.id for m in session.state.messages]
    assert ids == sorted(ids) and len(set(ids)) == len(ids)


def test_empty_input_is_rejected_without_backend_call():
    backend = ScriptedBackend()
    session = StorySession(backend)
    outcome = _run(session.run_turn("   \n "))
    assert isinstance(outcome, TurnError) and outcome.reason == "empty-input"
    assert backend.calls == []
    assert session.state == ConversationState()
    assert not session.can_undo


def test_backend_failure_leaves_state_untouched():
    session = StorySession(ScriptedBackend(BackendError("connection refused")))
    outcome = _run(session.run_turn("Hello"))
    assert isinstance(outcome, TurnError)
    assert outcome.reason == "backend-unavailable"
    assert "connection refused" in outcome.detail
    assert session.state.messages == ()
    assert not session.can_undo
    assert not session.busy


def test_unexpected_backend_exception_is_reported_as_unavailable():
    session = StorySession(ScriptedBackend(RuntimeError("boom")))
    outcome = _run(session.run_turn("Hello"))
    assert outcome.reason == "backend-unavailable"
    assert not session.busy


def test_invalid_output_records_user_message_and_placeholder():
    session = StorySession(ScriptedBackend("I refuse to speak JSON"))
    session.add_manual_context("The sky is green")
    before = session.state

    outcome = _run(session.run_turn("Tell me a tale"))

    assert isinstance(outcome, TurnError)
    assert outcome.reason == "invalid-output"
    msgs = session.state.messages
    assert [m.sender for m in msgs] == [Sender.USER, Sender.AGENT]
    assert msgs[0].text == "Tell me a tale"
    assert msgs[1].text == INVALID_OUTPUT_PLACEHOLDER
    assert session.state.context == before.context
    # the placeholder turn is undoable like any other
    assert session.undo() == before
    assert not session.busy


def test_busy_rejection_while_turn_in_flight():
    async def scenario():
        gate = asyncio.Event()

        class SlowBackend(ScriptedBackend):
            async def generate(self, *args, **kwargs):
                await gate.wait()
                return await super().generate(*args, **kwargs)

        backend = SlowBackend(reply("first"))
        session = StorySession(backend)
        first = asyncio.create_task(session.run_turn("one"))
        await asyncio.sleep(0)
        assert session.busy

        second = await session.run_turn("two")
        assert isinstance(second, TurnError) and second.reason == "busy"
        assert session.state.messages == ()
        assert not session.can_undo

        gate.set()
        done = await first
        assert isinstance(done, TurnResult)
        assert not session.busy
        assert len(backend.calls) == 1
        return session

    session = _run(scenario())
    assert [m.text for m in session.state.messages] == ["one", "first"]


def test_undo_redo_inverse_law():
    session = StorySession(
        ScriptedBackend(reply("a", context="f1"), reply("b", context="f2\nf3"))
    )
    _run(session.run_turn("one"))
    session.add_manual_context("manual fact")
    _run(session.run_turn("two"))

    live = session.state
    session.undo()
    assert session.state != live
    session.redo()
    assert session.state == live
    assert session.state.context == ("f1", "manual fact", "f2", "f3")


def test_new_action_after_undo_clears_redo():
    session = StorySession(ScriptedBackend(reply("a"), reply("b")))
    _run(session.run_turn("one"))
    session.undo()
    assert session.can_redo

    _run(session.run_turn("two"))
    assert not session.can_redo
    assert session.redo() is None


def test_undo_on_fresh_session_returns_none():
    session = StorySession(ScriptedBackend())
    assert session.undo() is None
    assert session.redo() is None


def test_add_manual_context_noop_does_not_snapshot():
    session = StorySession(ScriptedBackend())
    assert session.add_manual_context("Alice is a knight\nBob is a wizard") is True
    assert session.history.depth == 1
    assert session.add_manual_context("  Alice is a knight  ") is False
    assert session.add_manual_context("\n\n") is False
    assert session.history.depth == 1


def test_delete_context_item():
    session = StorySession(ScriptedBackend())
    session.add_manual_context("a\nb\nc")
    assert session.delete_context_item(1) == "b"
    assert session.state.context == ("a", "c")
    session.undo()
    assert session.state.context == ("a", "b", "c")
    with pytest.raises(IndexError):
        session.delete_context_item(3)
    with pytest.raises(IndexError):
        session.delete_context_item(-1)


def test_clear_all_is_irreversible_and_keeps_context():
    session = StorySession(ScriptedBackend(reply("ok", context="fact")))
    _run(session.run_turn("hi"))
    session.clear_all()
    assert session.state.messages == ()
    assert session.state.context == ("fact",)
    assert not session.can_undo and not session.can_redo
    assert session.undo() is None


def test_import_failure_leaves_state_untouched():
    session = StorySession(ScriptedBackend())
    session.add_manual_context("keep me")
    before = session.state
    depth = session.history.depth

    out = session.import_document({"context": ["ok", 5]})

    assert isinstance(out, ImportFailure) and out.reason == "invalid-shape"
    assert session.state is before
    assert session.history.depth == depth


def test_import_of_undecodable_number_is_a_failure():
    session = StorySession(ScriptedBackend())
    session.add_manual_context("keep me")
    before = session.state

    out = session.import_document('{"context": ' + "1" * 5000 + "}")

    assert isinstance(out, ImportFailure) and out.reason == "malformed-json"
    assert session.state is before


def test_import_replaces_context_and_is_undoable():
    session = StorySession(ScriptedBackend(reply("ok")))
    _run(session.run_turn("hi"))
    session.add_manual_context("old fact")
    before = session.state

    out = session.import_document('{"context": ["new fact"], "story": "Tale."}')

    assert isinstance(out, ConversationState)
    assert session.state.context == ("new fact",)
    assert session.state.story == "Tale."
    assert session.state.messages == before.messages
    session.undo()
    assert session.state == before


def test_import_identical_state_is_noop():
    session = StorySession(ScriptedBackend())
    session.add_manual_context("a")
    depth = session.history.depth
    session.import_document(session.export())
    assert session.history.depth == depth


def test_export_import_roundtrip_via_session():
    session = StorySession(ScriptedBackend(reply("ok", context="x\ny")))
    _run(session.run_turn("go"))
    doc = session.export()

    other = StorySession(ScriptedBackend())
    other.import_document(doc)
    assert other.state.context == session.state.context


def test_save_and_load_restore_chat_and_continue_ids(tmp_data_dir: Path):
    session = StorySession(ScriptedBackend(reply("ok", context="fact")))
    _run(session.run_turn("hello"))
    path = session.save(tmp_data_dir / "story.json")

    restored = StorySession(ScriptedBackend(reply("again")))
    assert isinstance(restored.load(path), ConversationState)
    assert restored.state == session.state

    _run(restored.run_turn("more"))
    ids = [m.id for m in restored.state.messages]
    assert len(set(ids)) == len(ids) == 4


def test_load_with_clear_policy(tmp_data_dir: Path):
    session = StorySession(ScriptedBackend(reply("ok", context="fact")))
    _run(session.run_turn("hello"))
    path = session.save(tmp_data_dir / "story.json")
    loaded = session.load(path, messages=MessagePolicy.CLEAR)
    assert loaded.messages == ()
    assert loaded.context == ("fact",)


def test_story_deltas_are_appended():
    session = StorySession(
        ScriptedBackend(
            reply("Here it is", story="Once upon a time."),
            reply("More", story="The dragon woke."),
        )
    )
    _run(session.run_turn("Start the story"))
    _run(session.run_turn("Continue the story"))
    assert session.state.story == "Once upon a time.\n\nThe dragon woke."
