# src/polychat/config/migration.py
from __future__ import annotations
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from polychat.core.errors import MigrationError
from polychat.core.ports import BlobStore

logger = logging.getLogger(__name__)

CURRENT_VERSION = "1.0.0"
LEGACY_VERSION = "0.0.0"
VERSION_KEY = "config_version"

ConfigMap = Dict[str, Dict[str, Any]]


@dataclass(frozen=True)
class MigrationRule:
    from_version: str
    to_version: str
    migrate: Callable[[Dict[str, Any]], ConfigMap]


@dataclass
class MigrationResult:
    success: bool
    migrated: bool
    from_version: str
    to_version: str
    error: Optional[str] = None


def _timeout_seconds(value: Any) -> Any:
    # Legacy builds stored milliseconds
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 1000:
        return value / 1000
    return value


def migrate_legacy(old: Dict[str, Any]) -> ConfigMap:
    """0.0.0 -> 1.0.0: renamed fields, camelCase keys, millisecond timeouts."""
    new: ConfigMap = {}

    openai = old.get("openai")
    if isinstance(openai, dict):
        new["openai"] = {
            "api_key": openai.get("apiKey"),
            "base_url": openai.get("baseUrl") or "https://api.openai.com/v1",
            "organization": openai.get("orgId"),
            "timeout": _timeout_seconds(openai.get("timeout") or 30000),
            "max_retries": openai.get("retries", 3),
        }

    ollama = old.get("ollama")
    if isinstance(ollama, dict):
        new["ollama"] = {
            "base_url": ollama.get("url") or "http://localhost:11434",
            "local_port": ollama.get("port") or 11434,
            "timeout": _timeout_seconds(ollama.get("timeout") or 30000),
        }

    deepseek = old.get("deepseek")
    if isinstance(deepseek, dict):
        new["deepseek"] = {
            "api_key": deepseek.get("apiKey"),
            "base_url": deepseek.get("baseUrl"),
            "api_version": deepseek.get("apiVersion"),
            "timeout": _timeout_seconds(deepseek.get("timeout")),
        }

    # Drop keys the legacy blob never had
    return {p: {k: v for k, v in cfg.items() if v is not None} for p, cfg in new.items()}


class ConfigMigrationManager:
    """
    Brings a persisted config blob up to CURRENT_VERSION.

    Rules form a chain keyed by from_version; at most one rule may leave a
    given version, so the path from any stored version is unambiguous.
    """

    def __init__(
        self,
        store: Optional[BlobStore] = None,
        *,
        current_version: str = CURRENT_VERSION,
        rules: Optional[List[MigrationRule]] = None,
    ):
        self._store = store
        self.current_version = current_version
        self._rules: Dict[str, MigrationRule] = {}
        for rule in (rules if rules is not None else [MigrationRule(LEGACY_VERSION, "1.0.0", migrate_legacy)]):
            self.add_rule(rule)

    def add_rule(self, rule: MigrationRule) -> None:
        if rule.from_version == rule.to_version:
            raise MigrationError(f"Migration rule {rule.from_version} -> {rule.to_version} goes nowhere")
        if rule.from_version in self._rules:
            existing = self._rules[rule.from_version]
            raise MigrationError(
                f"Ambiguous migration from {rule.from_version}: "
                f"already goes to {existing.to_version}, refusing {rule.to_version}"
            )
        self._rules[rule.from_version] = rule

    def find_path(self, from_version: str, to_version: str) -> List[MigrationRule]:
        """Breadth-first walk over the rules. Raises MigrationError if unreachable."""
        if from_version == to_version:
            return []
        queue = deque([from_version])
        came_from: Dict[str, MigrationRule] = {}
        seen = {from_version}
        while queue:
            version = queue.popleft()
            rule = self._rules.get(version)
            if rule is None or rule.to_version in seen:
                continue
            came_from[rule.to_version] = rule
            if rule.to_version == to_version:
                path: List[MigrationRule] = []
                cur = to_version
                while cur != from_version:
                    step = came_from[cur]
                    path.append(step)
                    cur = step.from_version
                return list(reversed(path))
            seen.add(rule.to_version)
            queue.append(rule.to_version)
        raise MigrationError(f"No migration path from {from_version} to {to_version}", from_version=from_version)

    @staticmethod
    def _parse(raw: str) -> Tuple[str, Dict[str, Any]]:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Stored config is not a JSON object")
        if "configs" in data and isinstance(data.get("configs"), dict):
            version = data.get("version")
            return (version if isinstance(version, str) and version else LEGACY_VERSION), data["configs"]
        # Unversioned legacy blob: the whole object is the config map
        return LEGACY_VERSION, data

    def check_and_migrate(self, raw: str) -> Tuple[MigrationResult, ConfigMap]:
        from_version = LEGACY_VERSION
        try:
            from_version, config = self._parse(raw)
            if from_version == self.current_version:
                return MigrationResult(True, False, from_version, from_version), config

            for rule in self.find_path(from_version, self.current_version):
                logger.info("Migrating config %s -> %s", rule.from_version, rule.to_version)
                config = rule.migrate(config)

            self._save_version()
            return MigrationResult(True, True, from_version, self.current_version), config
        except Exception as e:
            logger.error("Config migration failed: %s", e)
            return MigrationResult(False, False, from_version, self.current_version, error=str(e)), {}

    def wrap(self, configs: ConfigMap) -> str:
        """Serialise a config map as the current versioned envelope."""
        return json.dumps({"version": self.current_version, "configs": configs}, ensure_ascii=False)

    def _save_version(self) -> None:
        if self._store is None:
            return
        stamp = json.dumps({"version": self.current_version, "timestamp": time.time()})
        try:
            self._store.save(VERSION_KEY, stamp)
        except Exception as e:
            logger.error("Could not record config version: %s", e)
