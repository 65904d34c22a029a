from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional
import threading

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from polychat.bootstrap import build_gateway
from polychat.core.cancel import CancelToken
from polychat.core.conversation import Conversation
from polychat.core.errors import ConfigValidationError, CredentialMissingError, ProviderError, RegistryError
from polychat.storage.transcript import ChatNotFoundError


class ChatRequest(BaseModel):
    session_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    system: Optional[str] = None
    message: str


class ApiKeyRequest(BaseModel):
    api_key: str


class ChatTitleRequest(BaseModel):
    title: str


class _Session:
    def __init__(self, conversation: Conversation):
        self.conversation = conversation
        self.cancel: Optional[CancelToken] = None


def _status_dict(st) -> Dict[str, Any]:
    return {"is_available": st.is_available, "is_loading": st.is_loading, "error": st.error}


def create_app(config_path: Optional[Path] = None, *, gateway: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    HTTP bridge for a desktop host: stream chat text, read/write provider config, manage saved chats.
A session id is the id of its saved chat, so sessions survive a restart.
    Pass an already built gateway (see bootstrap.build_gateway) or a settings path.
    """
    if gateway is None:
        if config_path is None:
            raise ValueError("create_app needs a config_path or a gateway")
        gateway = build_gateway(Path(config_path))

    cfg = gateway["cfg"]
    manager = gateway["manager"]
    history = gateway["history"]

    app = FastAPI(title="polychat")
    app.state.cfg = cfg
    app.state.manager = manager
    app.state.sessions: Dict[str, _Session] = {}
    app.state.lock = threading.Lock()

    def _ensure_registered(provider: str) -> str:
        if not manager.is_registered(provider):
            raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'")
        return provider.lower()

    def _load_session(session_id: str) -> Optional[_Session]:
        """Live session, or one rebuilt from its saved chat. Caller holds the lock."""
        session = app.state.sessions.get(session_id)
        if session is None and history.exists(session_id):
            try:
                conversation = Conversation.resume(manager, history.open(session_id))
            except (ChatNotFoundError, ValueError):
                return None
            session = _Session(conversation)
            app.state.sessions[session_id] = session
        return session

    def _get_session(req: ChatRequest) -> tuple[str, _Session]:
        with app.state.lock:
            session = _load_session(req.session_id) if req.session_id else None
            if session is not None:
                if req.provider or req.model:
                    session.conversation.switch(req.provider, req.model)
                return req.session_id, session

        provider = (req.provider or cfg["app"]["default_provider"]).lower()
        model = req.model or cfg["app"].get("default_model") or manager.get_service_config(provider).get("default_model")
        if not model:
            raise HTTPException(status_code=400, detail=f"No model given for '{provider}'")
        transcript = history.create(provider, model)
        session = _Session(Conversation(manager, provider, model, system_prompt=req.system, transcript=transcript))
        with app.state.lock:
            app.state.sessions[transcript.chat_id] = session
        return transcript.chat_id, session

    @app.get("/api/providers")
    def api_providers():
        return JSONResponse({
            "default": cfg["app"]["default_provider"],
            "providers": [
                {"name": p, "has_api_key": manager.has_api_key(p), "status": _status_dict(manager.get_status(p))}
                for p in manager.providers()
            ],
        })

    @app.get("/api/providers/{provider}/models")
    def api_models(provider: str):
        provider = _ensure_registered(provider)
        try:
            found = manager.get_models(provider)
        except CredentialMissingError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ProviderError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return JSONResponse({
            "models": [
                {"id": m.id, "name": m.name, "details": {k: v for k, v in vars(m.details).items() if v is not None}}
                for m in found
            ]
        })

    @app.get("/api/providers/{provider}/status")
    def api_status(provider: str, refresh: bool = False):
        provider = _ensure_registered(provider)
        if refresh:
            manager.check_available(provider)
        return JSONResponse(_status_dict(manager.get_status(provider)))

    @app.get("/api/providers/{provider}/config")
    def api_get_config(provider: str):
        provider = _ensure_registered(provider)
        shown = {k: v for k, v in manager.get_service_config(provider).items() if k != "api_key"}
        return JSONResponse(shown)

    @app.put("/api/providers/{provider}/config")
    def api_update_config(provider: str, partial: Dict[str, Any]):
        provider = _ensure_registered(provider)
        try:
            updated = manager.update_service_config(provider, partial)
        except ConfigValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors)
        return JSONResponse({k: v for k, v in updated.items() if k != "api_key"})

    @app.delete("/api/providers/{provider}/config")
    def api_reset_config(provider: str):
        provider = _ensure_registered(provider)
        manager.reset_service_config(provider)
        return JSONResponse({k: v for k, v in manager.get_service_config(provider).items() if k != "api_key"})

    @app.put("/api/providers/{provider}/key")
    def api_set_key(provider: str, req: ApiKeyRequest):
        provider = _ensure_registered(provider)
        try:
            manager.set_api_key(provider, req.api_key)
        except ConfigValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors)
        return JSONResponse({"provider": provider, "has_api_key": True, "persisted": manager.stores_keys_durably()})

    @app.delete("/api/providers/{provider}/key")
    def api_remove_key(provider: str):
        provider = _ensure_registered(provider)
        manager.remove_api_key(provider)
        return JSONResponse({"provider": provider, "has_api_key": False})

    @app.post("/api/chat")
    def api_chat(req: ChatRequest):
        if not req.message.strip():
            raise HTTPException(status_code=400, detail="Empty message")
        if req.provider:
            _ensure_registered(req.provider)
        session_id, session = _get_session(req)
        _ensure_registered(session.conversation.provider)

        cancel = CancelToken()
        session.cancel = cancel

        def gen():
            try:
                for chunk in session.conversation.run_turn_stream(req.message, cancel):
                    yield chunk
            except (ProviderError, RegistryError) as e:
                yield f"\n[error] {e}"
            finally:
                if session.cancel is cancel:
                    session.cancel = None

        return StreamingResponse(gen(), media_type="text/plain", headers={"X-Session-Id": session_id})

    @app.post("/api/chat/{session_id}/cancel")
    def api_cancel(session_id: str):
        with app.state.lock:
            session = app.state.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        cancelled = session.cancel is not None
        if session.cancel is not None:
            session.cancel.cancel()
        return JSONResponse({"session_id": session_id, "cancelled": cancelled})

    @app.get("/api/chat/{session_id}/messages")
    def api_messages(session_id: str):
        with app.state.lock:
            session = _load_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return JSONResponse({"messages": list(session.conversation.messages)})

    @app.get("/api/chats")
    def api_chats():
        return JSONResponse({"chats": [asdict(s) for s in history.list_chats()]})

    @app.put("/api/chats/{chat_id}/title")
    def api_rename_chat(chat_id: str, req: ChatTitleRequest):
        try:
            summary = history.rename(chat_id, req.title)
        except ChatNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return JSONResponse(asdict(summary))

    @app.delete("/api/chats/{chat_id}")
    def api_delete_chat(chat_id: str):
        with app.state.lock:
            session = app.state.sessions.pop(chat_id, None)
        if session is not None and session.cancel is not None:
            session.cancel.cancel()
        try:
            history.delete(chat_id)
        except ChatNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return JSONResponse({"id": chat_id, "deleted": True})

    return app


def run(
    *,
    config: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
    reload: bool = False,
) -> None:
    import uvicorn

    app = create_app(config)
    uvicorn.run(app, host=host, port=port, reload=reload)
