# src/polychat/config/validator.py
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from polychat.core.models import ServiceConfig


@dataclass(frozen=True)
class Rule:
    """
    One declarative check.
    field=None means the check receives the whole config instead of one value.
    Field rules only run when the field is present and not None.
    """
    field: Optional[str]
    check: Callable[[Any], bool]
    message: str


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


MIN_API_KEY_LENGTH = 32

_ORG_RE = re.compile(r"^org-[a-zA-Z0-9]{24}$")
_API_VERSION_RE = re.compile(r"^v\d+(\.\d+)*$")


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _is_url(v: Any) -> bool:
    if not isinstance(v, str):
        return False
    try:
        parts = urlparse(v)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _long_enough_key(v: Any) -> bool:
    return isinstance(v, str) and len(v.strip()) >= MIN_API_KEY_LENGTH


BASE_RULES: List[Rule] = [
    Rule("timeout", lambda v: _is_number(v) and v > 0, "timeout must be a number greater than 0"),
    Rule("max_retries", lambda v: _is_int(v) and v >= 0, "max_retries must be a non-negative integer"),
    Rule("base_url", _is_url, "base_url is not a valid http(s) URL"),
]

PROVIDER_RULES: Dict[str, List[Rule]] = {
    "openai": [
        Rule("api_key", _long_enough_key, f"OpenAI API key must be at least {MIN_API_KEY_LENGTH} characters"),
        Rule("organization", lambda v: isinstance(v, str) and bool(_ORG_RE.match(v)),
             "organization must look like 'org-' followed by 24 letters/digits"),
    ],
    "ollama": [
        Rule("local_port", _is_int, "local_port must be an integer"),
        Rule("local_port", lambda v: not _is_int(v) or 1 <= v <= 65535, "local_port must be between 1 and 65535"),
        Rule(None, lambda c: bool(c.get("base_url") or c.get("local_port")),
             "either base_url or local_port must be set"),
    ],
    "deepseek": [
        Rule("api_key", _long_enough_key, f"DeepSeek API key must be at least {MIN_API_KEY_LENGTH} characters"),
        Rule("api_version", lambda v: isinstance(v, str) and bool(_API_VERSION_RE.match(v)),
             "api_version must look like 'v1' or 'v1.2'"),
    ],
}


class ConfigValidator:
    """
    Pure, rule-driven validation. Collects every violation instead of stopping
    at the first one so a caller can report them all at once.
    """

    def __init__(self, provider_rules: Optional[Dict[str, List[Rule]]] = None):
        rules = PROVIDER_RULES if provider_rules is None else provider_rules
        self._rules: Dict[str, List[Rule]] = {k.lower(): list(v) for k, v in rules.items()}

    def register_rules(self, provider: str, rules: List[Rule]) -> None:
        self._rules.setdefault(provider.lower(), []).extend(rules)

    def rules_for(self, provider: str) -> List[Rule]:
        return BASE_RULES + self._rules.get(provider.lower(), [])

    def validate(self, provider: str, config: ServiceConfig) -> ValidationResult:
        errors: List[str] = []
        for rule in self.rules_for(provider):
            try:
                if rule.field is None:
                    ok = rule.check(config)
                else:
                    value = config.get(rule.field)
                    if value is None:
                        continue
                    ok = rule.check(value)
            except Exception:
                ok = False
            if not ok:
                errors.append(rule.message)
        return ValidationResult(is_valid=not errors, errors=errors)
