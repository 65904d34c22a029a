from __future__ import annotations
import asyncio
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from .bootstrap import build_gateway
from .config.service_config import dumps_config
from .config_loader import ConfigError
from .core.cancel import CancelToken
from .core.conversation import Conversation
from .core.errors import ConfigValidationError, ProviderError, RegistryError
from .storage.transcript import ChatNotFoundError
from .tools.sidecar import ToolSidecar, ToolSidecarError, specs_from_settings

app = typer.Typer(add_completion=False, help="Multi-provider streaming chat gateway.")
config_app = typer.Typer(help="Show and edit per-provider service config.")
key_app = typer.Typer(help="Store or remove provider API keys.")
chats_app = typer.Typer(help="List, show, rename or delete saved chats.")
app.add_typer(config_app, name="config")
app.add_typer(key_app, name="key")
app.add_typer(chats_app, name="chats")

console = Console()

DEFAULT_CONFIG = Path("config/default.yaml")


def _config_option():
    return typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to the YAML settings file.")


HELP_TEXT = "Commands: /help, /clear, /id, /title <text>, /provider <name>, /model <id>, /exit, /quit"


def _gateway(config: Path):
    try:
        return build_gateway(config)
    except (ConfigError, FileNotFoundError) as e:
        typer.echo(f"[config] {e}", err=True)
        raise typer.Exit(code=2)


def _fail(message: str, code: int = 1) -> None:
    typer.echo(message, err=True)
    raise typer.Exit(code=code)


def _parse_assignments(pairs: List[str]) -> dict:
    """key=value pairs; values are read as YAML scalars so 30 is an int and null clears."""
    out = {}
    for pair in pairs:
        if "=" not in pair:
            _fail(f"Expected key=value, got '{pair}'", code=2)
        key, _, value = pair.partition("=")
        out[key.strip()] = yaml.safe_load(value) if value.strip() else None
    return out


@app.command()
def chat(
    config: Path = _config_option(),
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    system: Optional[str] = typer.Option(None, "--system", help="System prompt for this conversation."),
    resume: Optional[str] = typer.Option(None, "--resume", "-r", help="Continue a saved chat by id (see 'chats list')."),
):
    """Interactive streaming chat. Ctrl+C stops the current reply."""
    gw = _gateway(config)
    cfg = gw["cfg"]
    manager = gw["manager"]
    history = gw["history"]

    if resume:
        try:
            conversation = Conversation.resume(manager, history.open(resume))
        except (ChatNotFoundError, ValueError) as e:
            _fail(f"[error] {e}", code=2)
        if provider or model:
            conversation.switch(provider, model)
    else:
        provider = (provider or cfg["app"]["default_provider"]).lower()
        model = model or cfg["app"].get("default_model") or manager.get_service_config(provider).get("default_model")
        if not model:
            _fail(f"No model given for '{provider}'. Pass --model or set app.default_model.", code=2)
        transcript = history.create(provider, model)
        conversation = Conversation(manager, provider, model, system_prompt=system, transcript=transcript)

    typer.echo(
        f"polychat [{conversation.provider}/{conversation.model_id}] chat {conversation.chat_id}. "
        "Type /help for commands. Ctrl+C to quit."
    )
    for m in conversation.messages:
        if m["role"] != "system":
            typer.echo(f"{m['role']}: {m['content']}")
    while True:
        try:
            user_input = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            typer.echo("\nBye.")
            return

        if not user_input:
            continue
        if user_input in ("/exit", "/quit"):
            typer.echo("Bye.")
            return
        if user_input == "/help":
            typer.echo(HELP_TEXT)
            continue
        if user_input == "/clear":
            conversation.clear()
            continue
        if user_input == "/id":
            typer.echo(conversation.chat_id)
            continue
        if user_input.startswith("/title "):
            conversation.transcript.rename(user_input.split(maxsplit=1)[1])
            typer.echo(f"[{conversation.transcript.title}]")
            continue
        if user_input.startswith("/provider "):
            conversation.switch(provider=user_input.split(maxsplit=1)[1])
            typer.echo(f"[{conversation.provider}/{conversation.model_id}]")
            continue
        if user_input.startswith("/model "):
            conversation.switch(model_id=user_input.split(maxsplit=1)[1])
            typer.echo(f"[{conversation.provider}/{conversation.model_id}]")
            continue

        cancel = CancelToken()
        gen = conversation.run_turn_stream(user_input, cancel)
        try:
            for piece in gen:
                typer.echo(piece, nl=False)
            typer.echo("")
        except KeyboardInterrupt:
            cancel.cancel()
            # Closing runs the finaliser that keeps the partial reply
            gen.close()
            typer.echo("\n[stream interrupted]")
        except (ProviderError, RegistryError) as e:
            typer.echo(f"\n[error] {e}", err=True)


@app.command()
def models(provider: str, config: Path = _config_option()):
    """List the models a provider offers."""
    manager = _gateway(config)["manager"]
    try:
        found = manager.get_models(provider)
    except (ProviderError, RegistryError) as e:
        _fail(f"[error] {e}")

    table = Table("id", "name", "details")
    for m in found:
        details = ", ".join(f"{k}={v}" for k, v in vars(m.details).items() if v is not None)
        table.add_row(m.id, m.name, details)
    console.print(table)


@app.command()
def status(provider: Optional[str] = typer.Argument(None), config: Path = _config_option()):
    """Check one provider (or all) and show availability."""
    manager = _gateway(config)["manager"]
    providers = [provider.lower()] if provider else manager.providers()

    table = Table("provider", "available", "error")
    for p in providers:
        try:
            manager.check_available(p)
        except RegistryError as e:
            _fail(f"[error] {e}")
        st = manager.get_status(p)
        table.add_row(p, "yes" if st.is_available else "no", st.error or "")
    console.print(table)


@config_app.command("show")
def config_show(provider: str, config: Path = _config_option()):
    manager = _gateway(config)["manager"]
    typer.echo(dumps_config(manager.get_service_config(provider)))


@config_app.command("set")
def config_set(
    provider: str,
    assignments: List[str] = typer.Argument(..., help="key=value pairs, e.g. timeout=30 base_url=http://host:11434"),
    config: Path = _config_option(),
):
    manager = _gateway(config)["manager"]
    try:
        updated = manager.update_service_config(provider, _parse_assignments(assignments))
    except ConfigValidationError as e:
        for err in e.errors:
            typer.echo(f"- {err}", err=True)
        _fail(f"Config for '{provider}' was not changed.")
    typer.echo(dumps_config(updated))


@config_app.command("reset")
def config_reset(
    provider: Optional[str] = typer.Argument(None),
    all_: bool = typer.Option(False, "--all", help="Reset every provider."),
    config: Path = _config_option(),
):
    manager = _gateway(config)["manager"]
    if all_:
        manager.reset_all_service_configs()
        typer.echo("All provider configs reset to defaults.")
        return
    if not provider:
        _fail("Give a provider or --all.", code=2)
    manager.reset_service_config(provider)
    typer.echo(dumps_config(manager.get_service_config(provider)))


@config_app.command("export")
def config_export(config: Path = _config_option()):
    typer.echo(_gateway(config)["manager"].export_configs())


@config_app.command("import")
def config_import(path: Path, config: Path = _config_option()):
    manager = _gateway(config)["manager"]
    try:
        result = manager.import_configs(path.read_text(encoding="utf-8"))
    except ConfigValidationError as e:
        _fail(f"[error] {e}")
    if not result.success:
        _fail(f"[error] {result.error}")
    note = f" (migrated from {result.from_version})" if result.migrated else ""
    typer.echo(f"Imported configs{note}.")


@key_app.command("set")
def key_set(
    provider: str,
    config: Path = _config_option(),
    api_key: str = typer.Option(..., prompt=True, hide_input=True),
    verify: bool = typer.Option(False, "--verify", help="Check the key with the provider first."),
):
    manager = _gateway(config)["manager"]
    if not manager.stores_keys_durably():
        _fail(
            f"secrets.method has no durable store, so the key would be lost when this command exits. "
            f"Set {provider.upper()}_API_KEY in the environment or .env, or add 'keyring' to secrets.method."
        )
    if verify and not manager.check_api_key(provider, api_key):
        _fail(f"'{provider}' rejected the key; nothing stored.")
    try:
        manager.set_api_key(provider, api_key)
    except ConfigValidationError as e:
        _fail(f"[error] {e}")
    typer.echo(f"Stored API key for {provider.lower()}.")


@key_app.command("remove")
def key_remove(provider: str, config: Path = _config_option()):
    _gateway(config)["manager"].remove_api_key(provider)
    typer.echo(f"Removed API key for {provider.lower()}.")


@chats_app.command("list")
def chats_list(config: Path = _config_option()):
    """Saved chats, most recently updated first."""
    found = _gateway(config)["history"].list_chats()
    if not found:
        typer.echo("No saved chats.")
        return
    table = Table("id", "title", "model", "msgs", "updated")
    for c in found:
        updated = (c.updated_at or "")[:16].replace("T", " ")
        table.add_row(c.id, c.title, c.model or "", str(c.message_count), updated)
    console.print(table)


@chats_app.command("show")
def chats_show(chat_id: str, config: Path = _config_option()):
    try:
        transcript = _gateway(config)["history"].open(chat_id)
    except ChatNotFoundError as e:
        _fail(f"[error] {e}")
    typer.echo(f"{transcript.title} [{transcript.provider}/{transcript.model}]")
    for m in transcript.messages:
        typer.echo(f"{m['role']}: {m['content']}")


@chats_app.command("rename")
def chats_rename(chat_id: str, title: str, config: Path = _config_option()):
    try:
        summary = _gateway(config)["history"].rename(chat_id, title)
    except ChatNotFoundError as e:
        _fail(f"[error] {e}")
    except ValueError as e:
        _fail(f"[error] {e}", code=2)
    typer.echo(f"Renamed {summary.id} to '{summary.title}'.")


@chats_app.command("delete")
def chats_delete(chat_id: str, config: Path = _config_option()):
    try:
        _gateway(config)["history"].delete(chat_id)
    except ChatNotFoundError as e:
        _fail(f"[error] {e}")
    typer.echo(f"Deleted chat {chat_id}.")


@app.command()
def tools(server: Optional[str] = typer.Argument(None), config: Path = _config_option(), timeout: float = 10.0):
    """List the tools exposed by the configured tool servers."""
    specs = specs_from_settings(_gateway(config)["cfg"])
    if server:
        if server not in specs:
            _fail(f"Unknown tool server '{server}'. Configured: {', '.join(specs) or 'none'}")
        specs = {server: specs[server]}

    async def _list():
        for name, spec in specs.items():
            sidecar = ToolSidecar(spec)
            try:
                await sidecar.connect(timeout=timeout)
                for tool in await sidecar.list_tools():
                    typer.echo(f"{name}: {tool.name} - {tool.description}")
            except ToolSidecarError as e:
                typer.echo(f"{name}: [error] {e}", err=True)
            finally:
                await sidecar.close()

    asyncio.run(_list())


@app.command()
def serve(
    config: Path = _config_option(),
    host: str = "127.0.0.1",
    port: int = 8000,
):
    """Run the HTTP bridge."""
    from .web.app import run

    run(config=config, host=host, port=port)


if __name__ == "__main__":
    app()
