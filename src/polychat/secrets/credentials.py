# src/polychat/secrets/credentials.py

from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Union
import logging
import os

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from polychat.core.ports import CredentialStore

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "polychat"


class EnvCredentialStore:
    """
    Read-only source: <PROVIDER>_API_KEY from the environment.
    set/remove only touch this process's environment.
    """

    persistent = False

    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        # Optional explicit provider -> env var name overrides
        self._map = {k.lower(): v for k, v in (mapping or {}).items()}

    def env_var(self, provider: str) -> str:
        return self._map.get(provider.lower(), f"{provider.upper()}_API_KEY")

    def get(self, provider: str) -> Optional[str]:
        val = os.getenv(self.env_var(provider))
        if val and val.strip():
            return val.strip()
        return None

    def set(self, provider: str, value: str) -> None:
        os.environ[self.env_var(provider)] = value

    def remove(self, provider: str) -> None:
        os.environ.pop(self.env_var(provider), None)


class KeyringCredentialStore:
    """System keyring, one entry per provider under a shared service name."""

    persistent = True

    def __init__(self, service: str = KEYRING_SERVICE):
        self._service = service

    def get(self, provider: str) -> Optional[str]:
        try:
            val = keyring.get_password(self._service, provider.lower())
        except KeyringError as e:
            logger.warning("Keyring lookup failed for %s: %s", provider, e)
            return None
        return val.strip() if val else None

    def set(self, provider: str, value: str) -> None:
        keyring.set_password(self._service, provider.lower(), value)

    def remove(self, provider: str) -> None:
        try:
            keyring.delete_password(self._service, provider.lower())
        except PasswordDeleteError:
            # Nothing stored
            pass


class MemoryCredentialStore:
    persistent = False

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data = {k.lower(): v for k, v in (initial or {}).items()}

    def get(self, provider: str) -> Optional[str]:
        return self._data.get(provider.lower())

    def set(self, provider: str, value: str) -> None:
        self._data[provider.lower()] = value

    def remove(self, provider: str) -> None:
        self._data.pop(provider.lower(), None)


class ChainedCredentialStore:
    """
    Reads try each store in order; the first non-empty value wins.
    Writes go to the first store, removes go to all of them.
    """

    def __init__(self, stores: List[CredentialStore]):
        if not stores:
            raise ValueError("ChainedCredentialStore needs at least one store")
        self._stores = list(stores)

    @property
    def persistent(self) -> bool:
        # Writes only reach the first store
        return self._stores[0].persistent

    @property
    def stores(self) -> List[CredentialStore]:
        return list(self._stores)

    def get(self, provider: str) -> Optional[str]:
        for store in self._stores:
            val = store.get(provider)
            if val:
                return val
        return None

    def set(self, provider: str, value: str) -> None:
        self._stores[0].set(provider, value)

    def remove(self, provider: str) -> None:
        for store in self._stores:
            store.remove(provider)


_ALLOWED_METHODS = {"env", "keyring"}


def _normalise_methods(method: Union[str, Iterable[str]]) -> List[str]:
    methods = [method] if isinstance(method, str) else list(method)
    norm: List[str] = []
    for m in methods:
        key = str(m).strip().lower()
        if key not in _ALLOWED_METHODS:
            raise ValueError(f"Unknown secrets method '{m}'. Allowed: {sorted(_ALLOWED_METHODS)}")
        if key not in norm:
            norm.append(key)
    return norm


def build_credential_store(method: Union[str, Iterable[str]] = "env") -> CredentialStore:
    """
    'keyring' -> keyring store; 'env' -> environment; a list chains them in order.
    """
    stores: List[CredentialStore] = []
    for name in _normalise_methods(method):
        if name == "env":
            stores.append(EnvCredentialStore())
        elif name == "keyring":
            stores.append(KeyringCredentialStore())
    if len(stores) == 1:
        return stores[0]
    return ChainedCredentialStore(stores)
