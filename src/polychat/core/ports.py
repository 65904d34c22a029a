from __future__ import annotations
from typing import Iterator, List, Optional, Protocol

from .models import ApiModel, ChatCallbacks, ChatOutcome, Message


class ChatService(Protocol):
    """
    Interface the gateway uses to talk to any LLM backend.
    """

    # Lower-case provider key, e.g. 'ollama'
    provider: str

    def get_models(self) -> List[ApiModel]:
        ...

    def check_available(self) -> bool:
        """Never raises. False on any network/credential failure."""
        ...

    def check_api_key(self, api_key: str) -> bool:
        """Authenticated check of a candidate key. Never raises."""
        ...

    def chat_stream(self, model_id: str, messages: List[Message], cancel=None) -> Iterator[str]:
        """
        Streaming call. Yields text tokens in arrival order.
        'messages' are OpenAI-style: [{'role': 'system'|'user'|'assistant', 'content': '...'}, ...]
        """
        ...

    def chat(self, model_id: str, messages: List[Message], callbacks: ChatCallbacks, cancel=None) -> ChatOutcome:
        ...


class CredentialStore(Protocol):
    # False when set() does not outlive the process
    persistent: bool

    def get(self, provider: str) -> Optional[str]: ...

    def set(self, provider: str, value: str) -> None: ...

    def remove(self, provider: str) -> None: ...


class BlobStore(Protocol):
    """Opaque string-keyed durable storage."""

    def load(self, key: str) -> Optional[str]: ...

    def save(self, key: str, value: str) -> None: ...
