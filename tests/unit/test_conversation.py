# tests/unit/test_conversation.py

from __future__ import annotations
import json
import sys
from pathlib import Path

import pytest

# Ensure "src" is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from polychat.core.cancel import CancelToken
from polychat.core.conversation import Conversation
from polychat.core.errors import NetworkError
from polychat.storage.transcript import ChatHistory, Transcript


class FakeManager:
    def __init__(self, pieces=("hel", "lo"), fail_after=None):
        self.pieces = pieces
        self.fail_after = fail_after
        self.calls = []

    def chat_stream(self, provider, model_id, messages, cancel=None):
        self.calls.append((provider, model_id, list(messages), cancel))
        for i, piece in enumerate(self.pieces):
            if self.fail_after is not None and i == self.fail_after:
                raise NetworkError("connection reset")
            yield piece


def test_run_turn_builds_history():
    mgr = FakeManager(("po", "ng"))
    conv = Conversation(mgr, "Ollama", "llama3", system_prompt="sys")

    assert conv.run_turn("ping") == "pong"
    assert conv.messages == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "ping"},
        {"role": "assistant", "content": "pong"},
    ]
    provider, model, sent, _ = mgr.calls[0]
    assert (provider, model) == ("ollama", "llama3")
    # The request carries the history up to and including the user turn
    assert sent[-1] == {"role": "user", "content": "ping"}


def test_stream_passes_cancel_token():
    mgr = FakeManager()
    conv = Conversation(mgr, "openai", "gpt-4o")
    cancel = CancelToken()
    assert list(conv.run_turn_stream("go", cancel)) == ["hel", "lo"]
    assert mgr.calls[0][3] is cancel
    assert conv.messages[-1] == {"role": "assistant", "content": "hello"}


def test_partial_reply_kept_on_close():
    conv = Conversation(FakeManager(("par", "tial")), "ollama", "llama3")
    gen = conv.run_turn_stream("go")
    assert next(gen) == "par"
    gen.close()
    assert conv.messages[-1] == {"role": "assistant", "content": "par"}


def test_partial_reply_kept_on_error():
    conv = Conversation(FakeManager(("a", "b", "c"), fail_after=2), "ollama", "llama3")
    with pytest.raises(NetworkError):
        conv.run_turn("go")
    assert conv.messages[-1] == {"role": "assistant", "content": "ab"}


def test_no_reply_no_assistant_message():
    conv = Conversation(FakeManager((), fail_after=None), "ollama", "llama3")
    assert conv.run_turn("go") == ""
    assert conv.messages == [{"role": "user", "content": "go"}]


def test_switch_and_clear():
    conv = Conversation(FakeManager(), "ollama", "llama3", system_prompt="sys")
    conv.run_turn("hi")
    conv.switch(provider="DeepSeek")
    conv.switch(model_id="deepseek-chat")
    assert (conv.provider, conv.model_id) == ("deepseek", "deepseek-chat")

    conv.clear()
    assert conv.messages == [{"role": "system", "content": "sys"}]


def _saved(path: Path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_transcript_records_every_message(tmp_path: Path):
    history = ChatHistory(tmp_path)
    transcript = history.create("ollama", "llama3")
    conv = Conversation(FakeManager(("po", "ng")), "ollama", "llama3", system_prompt="sys", transcript=transcript)

    conv.run_turn("ping")

    assert conv.chat_id == transcript.chat_id
    assert transcript.messages == conv.messages
    saved = [r for r in _saved(transcript.path) if r["type"] == "message"]
    assert [(r["role"], r["status"]) for r in saved] == [
        ("system", "complete"), ("user", "complete"), ("assistant", "complete"),
    ]


def test_first_message_sets_title(tmp_path: Path):
    transcript = Transcript(root_dir=tmp_path)
    conv = Conversation(FakeManager(), "ollama", "llama3", transcript=transcript)
    conv.run_turn("What is a monad?")
    conv.run_turn("And a functor?")
    assert transcript.title == "What is a monad?"
    assert transcript.temporary_title is False


def test_interrupted_reply_saved_as_partial(tmp_path: Path):
    transcript = Transcript(root_dir=tmp_path)
    conv = Conversation(FakeManager(("par", "tial")), "ollama", "llama3", transcript=transcript)
    cancel = CancelToken()
    gen = conv.run_turn_stream("go", cancel)
    assert next(gen) == "par"
    cancel.cancel()
    gen.close()

    last = _saved(transcript.path)[-1]
    assert (last["role"], last["content"], last["status"]) == ("assistant", "par", "partial")


def test_resume_continues_saved_chat(tmp_path: Path):
    first = ChatHistory(tmp_path)
    transcript = first.create("ollama", "llama3")
    Conversation(FakeManager(("po", "ng")), "ollama", "llama3", system_prompt="sys", transcript=transcript).run_turn("ping")

    # A new process: fresh history over the same directory
    mgr = FakeManager(("again",))
    conv = Conversation.resume(mgr, ChatHistory(tmp_path).open(transcript.chat_id))
    assert (conv.provider, conv.model_id) == ("ollama", "llama3")

    conv.run_turn("more")
    sent = mgr.calls[0][2]
    assert [m["role"] for m in sent] == ["system", "user", "assistant", "user"]
    assert sent[2] == {"role": "assistant", "content": "pong"}


def test_resume_needs_provider_and_model():
    with pytest.raises(ValueError):
        Conversation.resume(FakeManager(), Transcript())


def test_switch_and_clear_reach_transcript(tmp_path: Path):
    transcript = Transcript(root_dir=tmp_path)
    conv = Conversation(FakeManager(), "ollama", "llama3", system_prompt="sys", transcript=transcript)
    conv.run_turn("hi")
    conv.switch(provider="openai", model_id="gpt-4o")
    conv.clear()

    reloaded = Transcript(transcript.chat_id, tmp_path)
    assert (reloaded.provider, reloaded.model) == ("openai", "gpt-4o")
    assert reloaded.messages == [{"role": "system", "content": "sys"}]
