# src/polychat/services/factory.py
from __future__ import annotations
import logging
import threading
from typing import Callable, Dict, List

from polychat.core.errors import RegistryError
from polychat.core.ports import ChatService
from .base import ServiceContext

logger = logging.getLogger(__name__)

# Builds an adapter from the shared context
ServiceConstructor = Callable[[ServiceContext], ChatService]


class ServiceFactory:
    """
    Registry of provider -> constructor, plus a cache of built adapters
    (one instance per provider, created on first use).

    Registering a taken key or unregistering an unknown one raises RegistryError:
    both mean the wiring is wrong, not that something failed at runtime.
    """

    def __init__(self, context: ServiceContext):
        self._context = context
        self._constructors: Dict[str, ServiceConstructor] = {}
        self._instances: Dict[str, ChatService] = {}
        self._lock = threading.RLock()

    @property
    def context(self) -> ServiceContext:
        return self._context

    def register_service(self, provider: str, constructor: ServiceConstructor) -> None:
        key = provider.lower()
        with self._lock:
            if key in self._constructors:
                raise RegistryError(f"Provider '{provider}' is already registered")
            self._constructors[key] = constructor

    def unregister_service(self, provider: str) -> None:
        key = provider.lower()
        with self._lock:
            if key not in self._constructors:
                raise RegistryError(f"Provider '{provider}' is not registered")
            del self._constructors[key]
            self._instances.pop(key, None)

    def get_service(self, provider: str) -> ChatService:
        key = provider.lower()
        with self._lock:
            service = self._instances.get(key)
            if service is not None:
                return service
            constructor = self._constructors.get(key)
            if constructor is None:
                raise RegistryError(f"Provider '{provider}' is not registered")
            service = constructor(self._context)
            self._instances[key] = service
            logger.debug("Built %s adapter", key)
            return service

    def reset_service(self, provider: str) -> None:
        """Drop the cached adapter; the registration stays."""
        with self._lock:
            self._instances.pop(provider.lower(), None)

    def reset_all_services(self) -> None:
        with self._lock:
            self._instances.clear()

    def is_registered(self, provider: str) -> bool:
        with self._lock:
            return provider.lower() in self._constructors

    def has_service(self, provider: str) -> bool:
        with self._lock:
            return provider.lower() in self._instances

    def registered_providers(self) -> List[str]:
        with self._lock:
            return list(self._constructors)


def register_default_services(factory: ServiceFactory) -> ServiceFactory:
    """Register the built-in adapters. Imported here so the factory module has no adapter deps."""
    from .ollama import OllamaAdapter
    from .openai_compat import DeepSeekAdapter, OpenAIAdapter

    factory.register_service("ollama", OllamaAdapter)
    factory.register_service("openai", OpenAIAdapter)
    factory.register_service("deepseek", DeepSeekAdapter)
    return factory
