# src/polychat/core/conversation.py
from __future__ import annotations
from typing import TYPE_CHECKING, Iterator, List, Optional

from .cancel import CancelToken
from .models import Message, Role

if TYPE_CHECKING:
    from polychat.storage.transcript import Transcript


class Conversation:
    """
    One chat thread against one provider/model.

    With a transcript every message is also saved there, so the chat can be
    resumed later (see Conversation.resume). Without one it lives in memory.

    Not thread-safe: callers must not run two turns on the same conversation
    at once, both would append to the same history.
    """

    def __init__(
        self,
        manager,
        provider: str,
        model_id: str,
        system_prompt: Optional[str] = None,
        transcript: Optional["Transcript"] = None,
    ):
        self.manager = manager
        self.provider = provider.lower()
        self.model_id = model_id
        self.transcript = transcript
        self.messages: List[Message] = transcript.messages if transcript is not None else []
        if transcript is not None:
            transcript.update_meta(provider=self.provider, model=self.model_id)
        # A resumed chat keeps the prompt it started with
        if system_prompt and not self.messages:
            self._append("system", system_prompt)

    @classmethod
    def resume(cls, manager, transcript: "Transcript") -> "Conversation":
        if not transcript.provider or not transcript.model:
            raise ValueError(f"Chat '{transcript.chat_id}' has no provider/model recorded")
        return cls(manager, transcript.provider, transcript.model, transcript=transcript)

    @property
    def chat_id(self) -> Optional[str]:
        return self.transcript.chat_id if self.transcript is not None else None

    def _append(self, role: Role, content: str, status: str = "complete") -> None:
        self.messages.append({"role": role, "content": content})
        if self.transcript is not None:
            self.transcript.append_message(role, content, status)

    def switch(self, provider: Optional[str] = None, model_id: Optional[str] = None) -> None:
        if provider:
            self.provider = provider.lower()
        if model_id:
            self.model_id = model_id
        if self.transcript is not None:
            self.transcript.update_meta(provider=self.provider, model=self.model_id)

    def clear(self) -> None:
        self.messages = [m for m in self.messages if m["role"] == "system"]
        if self.transcript is not None:
            self.transcript.clear()

    def run_turn(self, user_text: str, cancel: Optional[CancelToken] = None) -> str:
        return "".join(self.run_turn_stream(user_text, cancel))

    def run_turn_stream(self, user_text: str, cancel: Optional[CancelToken] = None) -> Iterator[str]:
        """
        Append the user message and stream the reply.
        Whatever arrived before an error, a cancel or an early close is kept
        as the assistant message; the transcript marks it partial.
        """
        self._append("user", user_text)
        if self.transcript is not None:
            self.transcript.title_from(user_text)
        outgoing = list(self.messages)
        partial: List[str] = []
        finished: List[bool] = []

        def gen():
            try:
                for piece in self.manager.chat_stream(self.provider, self.model_id, outgoing, cancel):
                    partial.append(piece)
                    yield piece
                if cancel is None or not cancel.cancelled:
                    finished.append(True)
            finally:
                if partial:
                    self._append("assistant", "".join(partial), "complete" if finished else "partial")
        return gen()
