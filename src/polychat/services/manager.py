# src/polychat/services/manager.py
from __future__ import annotations
import logging
from typing import Any, Dict, Iterator, List, Optional

from polychat.config.events import ConfigEvent
from polychat.config.migration import MigrationResult
from polychat.config.service_config import ServiceConfigManager
from polychat.config.validator import ValidationResult
from polychat.core.cancel import CancelToken
from polychat.core.errors import ConfigValidationError
from polychat.core.models import ApiModel, ChatCallbacks, ChatOutcome, Message, ProviderStatus, ServiceConfig
from polychat.core.ports import ChatService, CredentialStore
from .factory import ServiceConstructor, ServiceFactory
from .status import StatusStore

logger = logging.getLogger(__name__)


class ApiServiceManager:
    """
    The one entry point consumers use.

    Composes the factory (adapter lifetime), the config manager (settings),
    the credential store and the status store. Every config change resets the
    affected adapter so the next call sees the new settings.
    """

    def __init__(self, factory: ServiceFactory):
        self._factory = factory
        ctx = factory.context
        self._configs: ServiceConfigManager = ctx.config_manager
        self._credentials: CredentialStore = ctx.credentials
        self._status: StatusStore = ctx.status
        self._unsubscribe = self._configs.events.subscribe(self._on_config_event)

    @property
    def factory(self) -> ServiceFactory:
        return self._factory

    @property
    def config_manager(self) -> ServiceConfigManager:
        return self._configs

    @property
    def status(self) -> StatusStore:
        return self._status

    def close(self) -> None:
        self._unsubscribe()

    def _on_config_event(self, event: ConfigEvent) -> None:
        if event.provider:
            self._factory.reset_service(event.provider)
        else:
            self._factory.reset_all_services()

    # ----- registration -----

    def register_service(self, provider: str, constructor: ServiceConstructor) -> None:
        self._factory.register_service(provider, constructor)

    def unregister_service(self, provider: str) -> None:
        self._factory.unregister_service(provider)

    def is_registered(self, provider: str) -> bool:
        return self._factory.is_registered(provider)

    def providers(self) -> List[str]:
        return self._factory.registered_providers()

    def get_service(self, provider: str) -> ChatService:
        return self._factory.get_service(provider)

    def reset_service(self, provider: str) -> None:
        self._factory.reset_service(provider)

    def reset_all_services(self) -> None:
        self._factory.reset_all_services()

    # ----- provider calls -----

    def get_models(self, provider: str) -> List[ApiModel]:
        return self.get_service(provider).get_models()

    def check_available(self, provider: str) -> bool:
        return self.get_service(provider).check_available()

    def check_api_key(self, provider: str, api_key: str) -> bool:
        return self.get_service(provider).check_api_key(api_key)

    def chat_stream(
        self,
        provider: str,
        model_id: str,
        messages: List[Message],
        cancel: Optional[CancelToken] = None,
    ) -> Iterator[str]:
        return self.get_service(provider).chat_stream(model_id, messages, cancel)

    def chat(
        self,
        provider: str,
        model_id: str,
        messages: List[Message],
        callbacks: ChatCallbacks,
        cancel: Optional[CancelToken] = None,
    ) -> ChatOutcome:
        return self.get_service(provider).chat(model_id, messages, callbacks, cancel)

    def get_status(self, provider: str) -> ProviderStatus:
        return self._status.get(provider)

    # ----- configuration -----

    def get_service_config(self, provider: str) -> ServiceConfig:
        return self._configs.get_config(provider)

    def validate_service_config(self, provider: str, partial: Dict[str, Any]) -> ValidationResult:
        return self._configs.validate_config(provider, partial)

    def update_service_config(self, provider: str, partial: Dict[str, Any]) -> ServiceConfig:
        updated = self._configs.update_config(provider, partial)
        # Unconditional, independent of event delivery
        self._factory.reset_service(provider)
        return updated

    def reset_service_config(self, provider: str) -> None:
        self._configs.reset_config(provider)
        self._factory.reset_service(provider)

    def reset_all_service_configs(self) -> None:
        self._configs.reset_all_configs()
        self._factory.reset_all_services()

    def import_configs(self, raw: str) -> MigrationResult:
        return self._configs.import_configs(raw)

    def export_configs(self) -> str:
        return self._configs.export_configs()

    # ----- credentials -----

    def has_api_key(self, provider: str) -> bool:
        return bool(self._credentials.get(provider.lower()))

    def stores_keys_durably(self) -> bool:
        """False when set_api_key only lasts for this process (env-only secrets)."""
        return bool(getattr(self._credentials, "persistent", False))

    def set_api_key(self, provider: str, api_key: str) -> None:
        """Validate the key format with the provider's rules, then store it."""
        key = provider.lower()
        result = self._configs.validate_config(key, {"api_key": api_key})
        if not result.is_valid:
            raise ConfigValidationError(key, result.errors)
        self._credentials.set(key, api_key)
        self._factory.reset_service(key)
        logger.info("Stored API key for %s", key)

    def remove_api_key(self, provider: str) -> None:
        key = provider.lower()
        self._credentials.remove(key)
        self._factory.reset_service(key)
        self._status.update(key, is_available=False)
