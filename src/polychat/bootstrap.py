from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv

from .config_loader import load_config
from .logging_config import setup_logging
from .config.events import ConfigEventManager
from .config.migration import ConfigMigrationManager
from .config.service_config import ServiceConfigManager
from .config.validator import ConfigValidator
from .core.ports import BlobStore, CredentialStore
from .secrets.credentials import build_credential_store
from .services.base import ServiceContext
from .services.factory import ServiceFactory, register_default_services
from .services.manager import ApiServiceManager
from .services.status import StatusStore
from .storage.blob_store import FileBlobStore
from .storage.transcript import ChatHistory


def build_gateway(
    config_path: Path,
    repo_root: Optional[Path] = None,
    *,
    credentials: Optional[CredentialStore] = None,
    store: Optional[BlobStore] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> Dict[str, Any]:
    """
    Composition root: load .env and YAML, set up logging, then wire stores,
    config management, status, factory, the manager facade and chat history.
    Returns: dict with cfg, paths, manager, plus the pieces it was built from.
    credentials/store/transport override the defaults (tests pass in-memory ones).
    """
    load_dotenv()
    cfg = load_config(config_path)
    config_dir = config_path.resolve().parent
    repo_root = repo_root or Path(__file__).resolve().parents[2]

    # ----- Paths -----
    data_path = Path(cfg["storage"]["data_dir"])
    data_dir = data_path if data_path.is_absolute() else (repo_root / data_path).resolve()
    chats_raw = cfg["storage"].get("chats_dir")
    if chats_raw:
        cp = Path(chats_raw)
        chats_dir = cp if cp.is_absolute() else (repo_root / cp).resolve()
    else:
        chats_dir = data_dir / "chats"

    log_file_raw = (cfg.get("logging") or {}).get("file")
    log_file = None
    if log_file_raw:
        lp = Path(log_file_raw)
        log_file = lp if lp.is_absolute() else (repo_root / lp).resolve()
    setup_logging(cfg["logging"]["level"], log_file)

    # ----- Stores -----
    if store is None:
        store = FileBlobStore(data_dir)
    if credentials is None:
        credentials = build_credential_store((cfg.get("secrets") or {}).get("method", "env"))
    history = ChatHistory(chats_dir)

    # ----- Config management -----
    events = ConfigEventManager()
    migrations = ConfigMigrationManager(store)
    config_manager = ServiceConfigManager(
        store,
        events=events,
        migrations=migrations,
        validator=ConfigValidator(),
    )

    # ----- Services -----
    status = StatusStore()
    context = ServiceContext(
        config_manager=config_manager,
        credentials=credentials,
        status=status,
        transport=transport,
    )
    factory = register_default_services(ServiceFactory(context))
    manager = ApiServiceManager(factory)

    return {
        "cfg": cfg,
        "paths": {"config_dir": config_dir, "repo_root": repo_root, "data_dir": data_dir, "chats_dir": chats_dir, "log_file": log_file},
        "manager": manager,
        "config_manager": config_manager,
        "events": events,
        "status": status,
        "credentials": credentials,
        "history": history,
    }
