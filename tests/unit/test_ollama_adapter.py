# tests/unit/test_ollama_adapter.py

from __future__ import annotations
import json
import sys
import threading
import time
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from polychat.core.cancel import CancelToken
from polychat.core.errors import NetworkError, ProviderClientError, ProviderTransientError
from polychat.core.models import ChatCallbacks, ChatOutcome
from polychat.services.ollama import OllamaAdapter

MESSAGES = [{"role": "user", "content": "hi"}]


def _line(content: str, done: bool = False) -> bytes:
    return (json.dumps({"message": {"role": "assistant", "content": content}, "done": done}) + "\n").encode()


class Recorder:
    def __init__(self):
        self.tokens = []
        self.errors = []
        self.completed = 0
        self.aborted = 0

    def callbacks(self, on_token=None):
        return ChatCallbacks(
            on_token=on_token or self.tokens.append,
            on_error=self.errors.append,
            on_complete=self._complete,
            on_abort=self._abort,
        )

    def _complete(self):
        self.completed += 1

    def _abort(self):
        self.aborted += 1


def test_chat_stream_posts_and_yields_tokens(make_context):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        # Frames straddle reads on purpose
        body = _line("Hel") + _line("lo") + _line("", done=True)
        return httpx.Response(200, content=iter([body[:7], body[7:40], body[40:]]))

    ctx = make_context(handler)
    adapter = OllamaAdapter(ctx)

    assert list(adapter.chat_stream("llama3", MESSAGES)) == ["Hel", "lo"]
    assert seen["url"] == "http://localhost:11434/api/chat"
    assert seen["body"] == {"model": "llama3", "messages": MESSAGES, "stream": True}

    st = ctx.status.get("ollama")
    assert st.is_loading is False and st.is_available is True and st.error is None


def test_base_url_falls_back_to_local_port(make_context):
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, json={"version": "0.3.0"})

    ctx = make_context(handler)
    ctx.config_manager.update_config("ollama", {"base_url": None, "local_port": 9999})
    assert OllamaAdapter(ctx).check_available() is True
    assert urls == ["http://localhost:9999/api/version"]


def test_get_models_maps_details(make_context):
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{
            "name": "llama3:latest",
            "model": "llama3:latest",
            "details": {"format": "gguf", "family": "llama", "parameter_size": "8.0B", "quantization_level": "Q4_0"},
        }]})

    ctx = make_context(handler)
    models = OllamaAdapter(ctx).get_models()
    assert [m.id for m in models] == ["llama3:latest"]
    assert models[0].details.family == "llama"
    assert models[0].details.quantization_level == "Q4_0"
    assert models[0].details.max_tokens is None
    assert ctx.status.get("ollama").is_available


def test_check_available_never_raises(make_context):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    ctx = make_context(handler)
    adapter = OllamaAdapter(ctx)
    assert adapter.check_available() is False
    assert adapter.check_api_key("anything") is False
    st = ctx.status.get("ollama")
    assert st.is_available is False and "not reachable" in st.error


def test_http_errors_are_classified(make_context):
    statuses = iter([404, 503])

    def handler(request):
        return httpx.Response(next(statuses), json={"error": "model 'nope' not found"})

    ctx = make_context(handler)
    adapter = OllamaAdapter(ctx)
    with pytest.raises(ProviderClientError, match="not found"):
        list(adapter.chat_stream("nope", MESSAGES))
    with pytest.raises(ProviderTransientError):
        list(adapter.chat_stream("nope", MESSAGES))

    st = ctx.status.get("ollama")
    assert st.is_loading is False and st.error


def test_network_failure_mid_stream_keeps_delivered_tokens(make_context):
    def body():
        yield _line("par")
        raise httpx.ReadError("connection reset")

    ctx = make_context(lambda request: httpx.Response(200, content=body()))
    rec = Recorder()
    outcome = OllamaAdapter(ctx).chat("llama3", MESSAGES, rec.callbacks())

    assert outcome is ChatOutcome.FAILED
    assert rec.tokens == ["par"]
    assert len(rec.errors) == 1 and isinstance(rec.errors[0], NetworkError)
    assert rec.completed == 0
    assert ctx.status.get("ollama").is_loading is False


def test_chat_completes_once(make_context):
    ctx = make_context(lambda request: httpx.Response(200, content=_line("a") + _line("b") + _line("", True)))
    rec = Recorder()
    outcome = OllamaAdapter(ctx).chat("llama3", MESSAGES, rec.callbacks())
    assert outcome is ChatOutcome.COMPLETED
    assert rec.tokens == ["a", "b"]
    assert rec.completed == 1 and rec.aborted == 0 and rec.errors == []


def test_cancel_after_k_tokens(make_context):
    k = 2
    pulled = []

    def body():
        for i in range(10):
            pulled.append(i)
            yield _line(f"t{i}")

    ctx = make_context(lambda request: httpx.Response(200, content=body()))
    cancel = CancelToken()
    rec = Recorder()

    def on_token(tok):
        rec.tokens.append(tok)
        if len(rec.tokens) == k:
            cancel.cancel()

    outcome = OllamaAdapter(ctx).chat("llama3", MESSAGES, rec.callbacks(on_token), cancel)

    assert outcome is ChatOutcome.ABORTED
    assert rec.tokens == ["t0", "t1"]
    assert rec.completed == 0 and rec.aborted == 1 and rec.errors == []
    # Reading stopped right after the chunk that carried token K
    assert pulled == [0, 1]
    st = ctx.status.get("ollama")
    assert st.is_loading is False and st.error is None


def test_cancel_within_one_chunk(make_context):
    body = b"".join(_line(f"t{i}") for i in range(5))
    ctx = make_context(lambda request: httpx.Response(200, content=body))
    cancel = CancelToken()
    got = []
    for tok in OllamaAdapter(ctx).chat_stream("llama3", MESSAGES, cancel):
        got.append(tok)
        cancel.cancel()
    assert got == ["t0"]


def test_cancel_before_start_yields_nothing(make_context):
    ctx = make_context(lambda request: httpx.Response(200, content=_line("a")))
    cancel = CancelToken()
    cancel.cancel()
    rec = Recorder()
    assert OllamaAdapter(ctx).chat("llama3", MESSAGES, rec.callbacks(), cancel) is ChatOutcome.ABORTED
    assert rec.tokens == [] and rec.completed == 0


class StalledStream(httpx.SyncByteStream):
    """Sends one frame, then blocks as a silent model would until closed."""

    def __init__(self):
        self.closed = threading.Event()

    def __iter__(self):
        yield _line("first")
        if not self.closed.wait(5):
            yield _line("late")
            return
        raise httpx.ReadError("connection closed")

    def close(self):
        self.closed.set()


def test_cancel_interrupts_blocked_read(make_context):
    stream = StalledStream()
    ctx = make_context(lambda request: httpx.Response(200, stream=stream))
    cancel = CancelToken()
    gen = OllamaAdapter(ctx).chat_stream("llama3", MESSAGES, cancel)

    assert next(gen) == "first"
    started = time.monotonic()
    threading.Timer(0.05, cancel.cancel).start()

    assert list(gen) == []
    assert time.monotonic() - started < 2
    assert stream.closed.is_set()
    st = ctx.status.get("ollama")
    assert st.is_loading is False and st.error is None
