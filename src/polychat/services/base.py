# src/polychat/services/base.py
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

import httpx

from polychat.config.service_config import ServiceConfigManager
from polychat.core.cancel import CancelToken, until_cancelled
from polychat.core.errors import (
    CredentialMissingError,
    NetworkError,
    ProtocolError,
    ProviderClientError,
    ProviderError,
    ProviderTransientError,
)
from polychat.core.models import ApiModel, ChatCallbacks, ChatOutcome, Message, ServiceConfig
from polychat.core.ports import CredentialStore
from .status import StatusStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


@dataclass
class ServiceContext:
    """Collaborators every adapter is built with."""
    config_manager: ServiceConfigManager
    credentials: CredentialStore
    status: StatusStore
    # Injected in tests (httpx.MockTransport); None means real network
    transport: Optional[httpx.BaseTransport] = None


def classify_status(status: int, message: str) -> ProviderError:
    if status == 429 or status >= 500:
        return ProviderTransientError(message)
    return ProviderClientError(message)


def _response_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip()[:300]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if err:
            return str(err)
    return str(data)[:300]


class BaseChatService(ABC):
    """
    Per-provider adapter contract.

    Adapters keep no config of their own: every call re-reads the current
    config and credential, so a reset in the factory is only needed to drop
    cached clients.
    """

    # Remote providers cannot list models or chat without a key
    requires_api_key: bool = True

    def __init__(self, provider: str, context: ServiceContext):
        self.provider = provider.lower()
        self._ctx = context

    # ----- helpers -----

    def config(self) -> ServiceConfig:
        return self._ctx.config_manager.get_config(self.provider)

    def _api_key(self, cfg: Optional[ServiceConfig] = None) -> Optional[str]:
        key = self._ctx.credentials.get(self.provider)
        if key:
            return key
        cfg = cfg if cfg is not None else self.config()
        return cfg.get("api_key") or None

    def _require_api_key(self, cfg: Optional[ServiceConfig] = None) -> str:
        key = self._api_key(cfg)
        if not key:
            raise CredentialMissingError(self.provider)
        return key

    def _update_status(self, **fields: Any) -> None:
        self._ctx.status.update(self.provider, **fields)

    @staticmethod
    def _timeout(cfg: ServiceConfig) -> float:
        return float(cfg.get("timeout") or DEFAULT_TIMEOUT)

    def _http_client(self, cfg: ServiceConfig) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self._timeout(cfg)), transport=self._ctx.transport)

    def _check_response(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        if not response.is_closed:
            response.read()
        msg = f"{self.provider} HTTP {response.status_code}: {_response_detail(response)}"
        raise classify_status(response.status_code, msg)

    def _fail(self, exc: Exception) -> ProviderError:
        """Map a transport exception and record it on the status."""
        if isinstance(exc, ProviderError):
            err = exc
        elif isinstance(exc, httpx.TransportError):
            err = NetworkError(f"{self.provider}: {exc}")
        elif isinstance(exc, ValueError):
            err = ProtocolError(f"{self.provider}: unreadable response ({exc})")
        else:
            err = ProviderTransientError(f"{self.provider}: {exc}")
        self._update_status(error=str(err))
        return err

    # ----- contract -----

    @abstractmethod
    def get_models(self) -> List[ApiModel]:
        ...

    @abstractmethod
    def check_available(self) -> bool:
        ...

    @abstractmethod
    def check_api_key(self, api_key: str) -> bool:
        ...

    @abstractmethod
    def _chat_request(self, cfg: ServiceConfig, model_id: str, messages: List[Message]) -> Dict[str, Any]:
        """kwargs for httpx.Client.stream: method, url, headers, json."""

    @abstractmethod
    def _decode(self, chunks: Iterable[bytes]) -> Iterator[str]:
        ...

    def chat_stream(self, model_id: str, messages: List[Message], cancel: Optional[CancelToken] = None) -> Iterator[str]:
        """
        Lazily stream tokens. Nothing is sent until the first next().
        Cancelling (or closing the generator) stops reading before the next
        network chunk; no token is yielded once the cancel is seen.
        """
        cancel = cancel or CancelToken()
        self._update_status(is_loading=True, error=None)
        try:
            cfg = self.config()
            request = self._chat_request(cfg, model_id, list(messages))
            with self._http_client(cfg) as client:
                with client.stream(**request) as response:
                    self._check_response(response)
                    release = cancel.on_cancel(response.close)
                    try:
                        for token in self._decode(until_cancelled(response.iter_bytes(), cancel)):
                            if cancel.cancelled:
                                break
                            yield token
                    except Exception:
                        # A read broken by the cancel hook closing the response is an abort
                        if not cancel.cancelled:
                            raise
                    finally:
                        release()
            if cancel.cancelled:
                logger.info("%s chat aborted", self.provider)
            else:
                self._update_status(is_available=True)
        except ProviderError as e:
            self._fail(e)
            raise
        except httpx.HTTPError as e:
            raise self._fail(e) from e
        finally:
            self._update_status(is_loading=False)

    def chat(
        self,
        model_id: str,
        messages: List[Message],
        callbacks: ChatCallbacks,
        cancel: Optional[CancelToken] = None,
    ) -> ChatOutcome:
        """Callback form of chat_stream. Provider errors go to on_error, never raise."""
        cancel = cancel or CancelToken()
        try:
            for token in self.chat_stream(model_id, messages, cancel):
                callbacks.on_token(token)
        except ProviderError as e:
            callbacks.on_error(e)
            return ChatOutcome.FAILED

        if cancel.cancelled:
            if callbacks.on_abort is not None:
                callbacks.on_abort()
            return ChatOutcome.ABORTED
        callbacks.on_complete()
        return ChatOutcome.COMPLETED
