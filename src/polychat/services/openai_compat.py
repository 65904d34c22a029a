# src/polychat/services/openai_compat.py
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

import httpx
from openai import OpenAI

from polychat.core.errors import NetworkError, ProviderClientError, ProviderError, ProviderTransientError
from polychat.core.models import ApiModel, Message, ModelDetails, ServiceConfig
from .base import BaseChatService
from .streaming import sse_tokens

logger = logging.getLogger(__name__)


def _classify_openai_exception(exc: Exception) -> ProviderError:
    """
    Convert OpenAI SDK exceptions into neutral provider errors.
    Inspects attributes/message rather than importing specific SDK exception classes.
    """
    if isinstance(exc, ProviderError):
        return exc
    status = getattr(exc, "status_code", None) or getattr(exc, "http_status", None)
    msg = str(exc)

    if status is not None:
        s = int(status)
        if s == 429 or s >= 500:
            return ProviderTransientError(msg)
        return ProviderClientError(msg)

    lower = msg.lower()
    if "connection" in lower or isinstance(exc, httpx.TransportError):
        return NetworkError(msg)
    if any(k in lower for k in ("rate limit", "temporarily unavailable", "timeout", "timed out")):
        return ProviderTransientError(msg)
    if any(k in lower for k in ("invalid_request_error", "unsupported", "parameter", "authentication")):
        return ProviderClientError(msg)
    return ProviderTransientError(msg)


def _model(id: str, name: str, max_tokens: int, description: str) -> ApiModel:
    return ApiModel(id=id, name=name, details=ModelDetails(max_tokens=max_tokens, description=description))


class OpenAICompatibleService(BaseChatService):
    """
    Shared logic for OpenAI-style HTTPS APIs:
    - model listing and key checks go through the openai SDK
    - chat streams Server-Sent Events over httpx and decodes them ourselves
    - only models in `catalog` are offered, in catalog order
    """

    catalog: List[ApiModel] = []

    def api_root(self, cfg: ServiceConfig) -> str:
        return str(cfg.get("base_url") or "").rstrip("/")

    def _headers(self, cfg: ServiceConfig, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _client_kwargs(self, cfg: ServiceConfig) -> Dict[str, Any]:
        return {}

    def _sdk_client(self, cfg: ServiceConfig, api_key: str) -> OpenAI:
        kwargs: Dict[str, Any] = {
            "api_key": api_key,
            "base_url": self.api_root(cfg),
            "timeout": self._timeout(cfg),
            "max_retries": int(cfg.get("max_retries", 2)),
            **self._client_kwargs(cfg),
        }
        if self._ctx.transport is not None:
            kwargs["http_client"] = httpx.Client(transport=self._ctx.transport)
        return OpenAI(**kwargs)

    def _list_remote_ids(self, cfg: ServiceConfig, api_key: str) -> List[str]:
        with self._sdk_client(cfg, api_key) as client:
            return [m.id for m in client.models.list()]

    def get_models(self) -> List[ApiModel]:
        cfg = self.config()
        api_key = self._require_api_key(cfg)
        self._update_status(is_loading=True, error=None)
        try:
            remote = set(self._list_remote_ids(cfg, api_key))
        except Exception as e:
            self._update_status(is_available=False)
            raise self._fail(_classify_openai_exception(e)) from e
        finally:
            self._update_status(is_loading=False)

        self._update_status(is_available=True)
        return [m for m in self.catalog if m.id in remote]

    def check_api_key(self, api_key: str) -> bool:
        if not api_key:
            self._update_status(is_available=False)
            return False
        cfg = self.config()
        try:
            self._list_remote_ids(cfg, api_key)
            ok = True
        except Exception as e:
            logger.info("%s key check failed: %s", self.provider, _classify_openai_exception(e))
            ok = False
        self._update_status(is_available=ok, error=None if ok else f"{self.provider}: API key was rejected or the service is unreachable")
        return ok

    def check_available(self) -> bool:
        api_key = self._api_key()
        if not api_key:
            self._update_status(is_available=False)
            return False
        return self.check_api_key(api_key)

    def _chat_request(self, cfg: ServiceConfig, model_id: str, messages: List[Message]) -> Dict[str, Any]:
        api_key = self._require_api_key(cfg)
        return {
            "method": "POST",
            "url": f"{self.api_root(cfg)}/chat/completions",
            "headers": self._headers(cfg, api_key),
            "json": {"model": model_id, "messages": messages, "stream": True},
        }

    def _decode(self, chunks: Iterable[bytes]) -> Iterator[str]:
        return sse_tokens(chunks)


class OpenAIAdapter(OpenAICompatibleService):
    catalog = [
        _model("gpt-4o", "GPT-4o", 128000, "Flagship multimodal model"),
        _model("gpt-4o-mini", "GPT-4o mini", 128000, "Small, fast and cheap"),
        _model("gpt-4-turbo-preview", "GPT-4 Turbo", 128000, "GPT-4 with a longer context window"),
        _model("gpt-4", "GPT-4", 8192, "The original GPT-4"),
        _model("gpt-3.5-turbo", "GPT-3.5 Turbo", 4096, "Capable and economical"),
    ]

    def __init__(self, context, provider: str = "openai"):
        super().__init__(provider, context)

    def _headers(self, cfg: ServiceConfig, api_key: str) -> Dict[str, str]:
        headers = super()._headers(cfg, api_key)
        if cfg.get("organization"):
            headers["OpenAI-Organization"] = str(cfg["organization"])
        return headers

    def _client_kwargs(self, cfg: ServiceConfig) -> Dict[str, Any]:
        org: Optional[str] = cfg.get("organization")
        return {"organization": org} if org else {}


class DeepSeekAdapter(OpenAICompatibleService):
    catalog = [
        _model("deepseek-chat", "DeepSeek Chat", 8192, "General conversation"),
        _model("deepseek-coder", "DeepSeek Coder", 8192, "Code assistant"),
        _model("deepseek-reasoner", "DeepSeek Reasoner", 8192, "Step-by-step reasoning"),
    ]

    def __init__(self, context, provider: str = "deepseek"):
        super().__init__(provider, context)

    def api_root(self, cfg: ServiceConfig) -> str:
        base = super().api_root(cfg)
        version = str(cfg.get("api_version") or "").strip("/")
        if not version or base.endswith("/" + version):
            return base
        return f"{base}/{version}"
