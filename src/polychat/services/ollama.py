# src/polychat/services/ollama.py
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Iterator, List

import httpx

from polychat.core.errors import ProviderError
from polychat.core.models import ApiModel, Message, ModelDetails, ServiceConfig
from .base import BaseChatService
from .streaming import ndjson_tokens

logger = logging.getLogger(__name__)

DEFAULT_PORT = 11434


def _to_api_model(entry: Dict[str, Any]) -> ApiModel:
    details = entry.get("details") or {}
    name = entry.get("name") or entry.get("model") or ""
    return ApiModel(
        id=entry.get("model") or name,
        name=name,
        details=ModelDetails(
            format=details.get("format"),
            family=details.get("family"),
            parameter_size=details.get("parameter_size"),
            quantization_level=details.get("quantization_level"),
        ),
    )


class OllamaAdapter(BaseChatService):
    """
    Local daemon. No credential; every installed model is listed.
    Chat replies arrive as newline-delimited JSON.
    """

    requires_api_key = False

    def __init__(self, context, provider: str = "ollama"):
        super().__init__(provider, context)

    @staticmethod
    def base_url(cfg: ServiceConfig) -> str:
        base = cfg.get("base_url") or f"http://localhost:{cfg.get('local_port') or DEFAULT_PORT}"
        return str(base).rstrip("/")

    def get_models(self) -> List[ApiModel]:
        cfg = self.config()
        self._update_status(is_loading=True, error=None)
        try:
            with self._http_client(cfg) as client:
                resp = client.get(f"{self.base_url(cfg)}/api/tags")
                self._check_response(resp)
                data = resp.json()
        except ProviderError as e:
            self._update_status(is_available=False)
            self._fail(e)
            raise
        except (httpx.HTTPError, ValueError) as e:
            self._update_status(is_available=False)
            raise self._fail(e) from e
        finally:
            self._update_status(is_loading=False)

        models = [_to_api_model(m) for m in (data.get("models") or []) if isinstance(m, dict)]
        self._update_status(is_available=True)
        return models

    def check_available(self) -> bool:
        cfg = self.config()
        try:
            with self._http_client(cfg) as client:
                ok = client.get(f"{self.base_url(cfg)}/api/version").status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Ollama availability check failed: %s", e)
            ok = False
        self._update_status(is_available=ok, error=None if ok else f"Ollama is not reachable at {self.base_url(cfg)}")
        return ok

    def check_api_key(self, api_key: str) -> bool:
        # The daemon has no auth; a reachable daemon is a valid "credential"
        return self.check_available()

    def _chat_request(self, cfg: ServiceConfig, model_id: str, messages: List[Message]) -> Dict[str, Any]:
        return {
            "method": "POST",
            "url": f"{self.base_url(cfg)}/api/chat",
            "json": {"model": model_id, "messages": messages, "stream": True},
        }

    def _decode(self, chunks: Iterable[bytes]) -> Iterator[str]:
        return ndjson_tokens(chunks)
