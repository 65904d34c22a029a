from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Literal, Optional

Role = Literal["system", "user", "assistant"]

# Messages stay OpenAI-style dicts end to end: {'role': ..., 'content': ...}
Message = Dict[str, str]

ServiceConfig = Dict[str, Any]


@dataclass(frozen=True)
class ModelDetails:
    max_tokens: Optional[int] = None
    description: Optional[str] = None
    format: Optional[str] = None
    family: Optional[str] = None
    parameter_size: Optional[str] = None
    quantization_level: Optional[str] = None


@dataclass(frozen=True)
class ApiModel:
    """Provider-reported model. Read-only, never persisted."""
    id: str
    name: str
    details: ModelDetails = field(default_factory=ModelDetails)


@dataclass(frozen=True)
class ProviderStatus:
    is_available: bool = False
    is_loading: bool = False
    error: Optional[str] = None


class ChatOutcome(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class ChatCallbacks:
    """
    Callback form of a streaming chat.
    on_complete is never called after a cancellation; on_abort is, if given.
    """
    on_token: Callable[[str], None]
    on_error: Callable[[Exception], None]
    on_complete: Callable[[], None]
    on_abort: Optional[Callable[[], None]] = None
