# tests/unit/test_bootstrap.py

from __future__ import annotations
import json
import sys
from pathlib import Path

import httpx

# Ensure "src" is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from polychat.bootstrap import build_gateway
from polychat.secrets.credentials import MemoryCredentialStore
from polychat.services.manager import ApiServiceManager
from polychat.services.ollama import OllamaAdapter
from polychat.storage.transcript import ChatHistory


def _write_config(tmp_path: Path, data_dir: str, log_file: str = "") -> Path:
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir(parents=True)
    cfg = cfg_dir / "default.yaml"
    cfg.write_text(
        f"""
app:
  default_provider: Ollama
  default_model: llama3:latest
storage:
  data_dir: "{data_dir}"
logging:
  level: warning
  file: "{log_file}"
secrets:
  method: env
""",
        encoding="utf-8",
    )
    return cfg


def test_build_gateway_wires_everything(tmp_path: Path):
    # Arrange: temp repo with config/default.yaml and a relative data dir
    cfg = _write_config(tmp_path, "data")

    # Act
    ctx = build_gateway(cfg, repo_root=tmp_path, credentials=MemoryCredentialStore())

    # Assert
    manager = ctx["manager"]
    assert isinstance(manager, ApiServiceManager)
    assert manager.providers() == ["ollama", "openai", "deepseek"]
    assert isinstance(manager.get_service("ollama"), OllamaAdapter)
    assert ctx["cfg"]["app"]["default_provider"] == "ollama"
    assert ctx["paths"]["data_dir"] == (tmp_path / "data").resolve()
    assert ctx["paths"]["config_dir"] == cfg.parent.resolve()
    assert ctx["paths"]["log_file"] is None
    assert manager.config_manager is ctx["config_manager"]
    assert isinstance(ctx["history"], ChatHistory)
    assert ctx["history"].root_dir == ctx["paths"]["chats_dir"] == (tmp_path / "data").resolve() / "chats"


def test_config_changes_persist_across_builds(tmp_path: Path):
    data_dir = tmp_path / "state"
    cfg = _write_config(tmp_path, str(data_dir))

    first = build_gateway(cfg, repo_root=tmp_path, credentials=MemoryCredentialStore())
    first["manager"].update_service_config("ollama", {"timeout": 12})

    stored = json.loads((data_dir / "api_service_configs.json").read_text(encoding="utf-8"))
    assert stored["version"] == "1.0.0"
    assert stored["configs"]["ollama"]["timeout"] == 12

    second = build_gateway(cfg, repo_root=tmp_path, credentials=MemoryCredentialStore())
    assert second["manager"].get_service_config("ollama")["timeout"] == 12


def test_transport_override_reaches_adapters(tmp_path: Path):
    cfg = _write_config(tmp_path, "data", log_file="logs/polychat.log")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"version": "0.3.0"}))

    ctx = build_gateway(cfg, repo_root=tmp_path, credentials=MemoryCredentialStore(), transport=transport)

    assert ctx["paths"]["log_file"] == (tmp_path / "logs" / "polychat.log").resolve()
    assert ctx["manager"].check_available("ollama") is True
