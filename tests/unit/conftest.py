# tests/unit/conftest.py

from __future__ import annotations
import sys
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from polychat.config.service_config import ServiceConfigManager  # noqa: E402
from polychat.secrets.credentials import MemoryCredentialStore  # noqa: E402
from polychat.services.base import ServiceContext  # noqa: E402
from polychat.services.status import StatusStore  # noqa: E402
from polychat.storage.blob_store import MemoryBlobStore  # noqa: E402


def _unrouted(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, json={"error": f"unexpected request {request.method} {request.url}"})


@pytest.fixture
def make_context():
    """
    Build a ServiceContext over in-memory stores.
    handler: httpx.MockTransport handler (defaults to failing every request).
    keys: provider -> credential.
    """
    def _make(handler: Optional[Callable[[httpx.Request], httpx.Response]] = None, keys: Optional[dict] = None) -> ServiceContext:
        return ServiceContext(
            config_manager=ServiceConfigManager(MemoryBlobStore()),
            credentials=MemoryCredentialStore(keys or {}),
            status=StatusStore(),
            transport=httpx.MockTransport(handler or _unrouted),
        )
    return _make
