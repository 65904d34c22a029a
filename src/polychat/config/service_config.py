# src/polychat/config/service_config.py
from __future__ import annotations
import copy
import json
import logging
import threading
from typing import Any, Dict, Optional

from polychat.core.errors import ConfigValidationError
from polychat.core.models import ServiceConfig
from polychat.core.ports import BlobStore
from .events import ConfigEvent, ConfigEventManager, ConfigEventType
from .migration import ConfigMigrationManager, MigrationResult
from .validator import ConfigValidator, ValidationResult

logger = logging.getLogger(__name__)

STORAGE_KEY = "api_service_configs"

DEFAULT_CONFIGS: Dict[str, ServiceConfig] = {
    "ollama": {
        "base_url": "http://localhost:11434",
        "local_port": 11434,
        "timeout": 60,
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "timeout": 60,
        "max_retries": 2,
    },
    "deepseek": {
        "base_url": "https://api.deepseek.com",
        "api_version": "v1",
        "timeout": 60,
        "max_retries": 2,
    },
}


class ServiceConfigManager:
    """
    Owns the authoritative {provider -> config} map.

    - A provider with nothing stored reads as its defaults. Stored configs are
      complete (migrated legacy data gets the defaults filled in), so a None
      in an update really removes the key.
    - Loaded entries are validated like updates; one that fails is logged and
      dropped so the provider falls back to its defaults.
    - Updates merge, validate the merged result, then replace or raise.
      A rejected update leaves everything as it was.
    - Every successful mutation persists the whole envelope. A failed save is
      logged; the in-memory map stays correct for this session.
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        events: Optional[ConfigEventManager] = None,
        migrations: Optional[ConfigMigrationManager] = None,
        validator: Optional[ConfigValidator] = None,
        defaults: Optional[Dict[str, ServiceConfig]] = None,
    ):
        self._store = store
        self._events = events or ConfigEventManager()
        self._migrations = migrations or ConfigMigrationManager(store)
        self._validator = validator or ConfigValidator()
        self._defaults = {k.lower(): dict(v) for k, v in (defaults if defaults is not None else DEFAULT_CONFIGS).items()}
        self._configs: Dict[str, ServiceConfig] = {}
        self._lock = threading.RLock()
        self.last_load: Optional[MigrationResult] = None
        self._load()

    @property
    def events(self) -> ConfigEventManager:
        return self._events

    @property
    def validator(self) -> ConfigValidator:
        return self._validator

    # ----- Reads -----

    def defaults_for(self, provider: str) -> ServiceConfig:
        return dict(self._defaults.get(provider.lower(), {}))

    def get_config(self, provider: str) -> ServiceConfig:
        key = provider.lower()
        with self._lock:
            stored = self._configs.get(key)
            if stored is None:
                return self.defaults_for(key)
            return copy.deepcopy(stored)

    def validate_config(self, provider: str, partial: Dict[str, Any]) -> ValidationResult:
        """Validate what update_config would store, without storing it."""
        return self._validator.validate(provider, self._merge(provider, partial))

    def export_configs(self) -> str:
        with self._lock:
            return self._migrations.wrap(copy.deepcopy(self._configs))

    # ----- Mutations -----

    def update_config(self, provider: str, partial: Dict[str, Any]) -> ServiceConfig:
        key = provider.lower()
        with self._lock:
            old = self.get_config(key)
            merged = self._merge(key, partial)
            result = self._validator.validate(key, merged)
            if not result.is_valid:
                raise ConfigValidationError(key, result.errors)
            self._configs[key] = merged
            self._save()
        self._events.publish(ConfigEvent(ConfigEventType.UPDATED, provider=key, old_value=old, new_value=dict(merged)))
        return dict(merged)

    def reset_config(self, provider: str) -> None:
        key = provider.lower()
        with self._lock:
            old = self.get_config(key)
            self._configs.pop(key, None)
            self._save()
        self._events.publish(ConfigEvent(ConfigEventType.RESET, provider=key, old_value=old, new_value=self.get_config(key)))

    def reset_all_configs(self) -> None:
        with self._lock:
            old = copy.deepcopy(self._configs)
            self._configs = {}
            self._save()
        self._events.publish(ConfigEvent(ConfigEventType.RESET, old_value=old, new_value={}))

    def import_configs(self, raw: str) -> MigrationResult:
        """
        Replace the whole map with an exported (or legacy) blob.
        Every provider in it must validate, otherwise nothing changes.
        """
        result, configs = self._migrations.check_and_migrate(raw)
        if not result.success:
            return result
        cleaned = self._clean(configs, fill_defaults=result.migrated)
        for provider, cfg in cleaned.items():
            check = self._validator.validate(provider, cfg)
            if not check.is_valid:
                raise ConfigValidationError(provider, check.errors)
        with self._lock:
            old = copy.deepcopy(self._configs)
            self._configs = cleaned
            self._save()
        self._events.publish(ConfigEvent(ConfigEventType.IMPORTED, old_value=old, new_value=copy.deepcopy(cleaned)))
        return result

    # ----- Internals -----

    def _merge(self, provider: str, partial: Dict[str, Any]) -> ServiceConfig:
        merged = self.get_config(provider)
        for k, v in (partial or {}).items():
            if v is None:
                # None removes the key
                merged.pop(k, None)
            else:
                merged[k] = v
        return merged

    def _clean(self, configs: Dict[str, Any], *, fill_defaults: bool) -> Dict[str, ServiceConfig]:
        # Migrated legacy data is partial; current envelopes are stored complete
        return {
            str(p).lower(): ({**self.defaults_for(str(p)), **cfg} if fill_defaults else dict(cfg))
            for p, cfg in (configs or {}).items()
            if isinstance(cfg, dict)
        }

    def _drop_invalid(self, configs: Dict[str, ServiceConfig]) -> Dict[str, ServiceConfig]:
        kept: Dict[str, ServiceConfig] = {}
        for provider, cfg in configs.items():
            check = self._validator.validate(provider, cfg)
            if check.is_valid:
                kept[provider] = cfg
            else:
                logger.warning("Dropping stored %s config: %s", provider, "; ".join(check.errors))
        return kept

    def _load(self) -> None:
        try:
            raw = self._store.load(STORAGE_KEY)
        except Exception as e:
            logger.error("Could not read stored service configs: %s", e)
            return
        if not raw:
            return

        result, configs = self._migrations.check_and_migrate(raw)
        self.last_load = result
        if not result.success:
            logger.error("Stored service configs are unusable (%s); starting empty", result.error)
            return

        cleaned = self._clean(configs, fill_defaults=result.migrated)
        self._configs = self._drop_invalid(cleaned)
        if result.migrated or len(self._configs) != len(cleaned):
            self._save()
        if result.migrated:
            self._events.publish(ConfigEvent(
                ConfigEventType.MIGRATED,
                old_value={"version": result.from_version},
                new_value={"version": result.to_version},
            ))

    def _save(self) -> None:
        try:
            self._store.save(STORAGE_KEY, self._migrations.wrap(self._configs))
        except Exception as e:
            logger.error("Could not persist service configs: %s", e)


def dumps_config(config: ServiceConfig, *, redact: bool = True) -> str:
    """Pretty JSON for display. The API key is masked unless redact=False."""
    shown = dict(config)
    if redact and shown.get("api_key"):
        key = str(shown["api_key"])
        shown["api_key"] = key[:4] + "..." + key[-4:] if len(key) > 8 else "***"
    return json.dumps(shown, indent=2, sort_keys=True)
