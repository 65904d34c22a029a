from __future__ import annotations
from typing import List, Optional


class ProviderError(Exception):
    """Base class for provider-level failures."""


class ProviderClientError(ProviderError):
    """
    Non-retryable: caller/config issue (4xx invalid request, auth, unknown model,
    missing credential, etc.). The fix is change input/config, not retry.
    """


class ProviderTransientError(ProviderError):
    """
    Retryable: rate limits, timeouts, network hiccups, 5xx, etc.
    Retrying is the caller's decision; the gateway never retries a stream.
    """


class CredentialMissingError(ProviderClientError):
    """The operation needs a credential and none is configured for the provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"No API key configured for '{provider}'")


class NetworkError(ProviderTransientError):
    """Connection or transport failure (DNS, refused, reset, read timeout)."""


class ProtocolError(ProviderError):
    """
    Transport was fine but one frame of the payload was malformed.
    Streaming parsers recover from this locally: log, skip the frame, continue.
    """


class ConfigValidationError(ValueError):
    """A configuration update was rejected. Nothing was mutated."""

    def __init__(self, provider: str, errors: List[str]):
        self.provider = provider
        self.errors = list(errors)
        super().__init__(f"Invalid config for '{provider}': " + "; ".join(self.errors))


class MigrationError(Exception):
    """No usable migration path between the stored and current config versions."""

    def __init__(self, message: str, from_version: Optional[str] = None):
        self.from_version = from_version
        super().__init__(message)


class RegistryError(LookupError):
    """Duplicate or missing provider registration. A programming error."""
