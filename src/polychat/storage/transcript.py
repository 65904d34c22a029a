# src/polychat/storage/transcript.py
from __future__ import annotations
import datetime as dt
import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from polychat.core.models import Message, Role

logger = logging.getLogger(__name__)

Status = Literal["complete", "partial"]

DEFAULT_TITLE = "New chat"
TITLE_MAX_CHARS = 40

_ROLES = ("system", "user", "assistant")
_META_FIELDS = ("title", "temporary_title", "provider", "model")
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
# Ids become file names
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class ChatNotFoundError(LookupError):
    def __init__(self, chat_id: str):
        super().__init__(f"No saved chat '{chat_id}'")
        self.chat_id = chat_id


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def new_chat_id() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]


def is_valid_chat_id(chat_id: Optional[str]) -> bool:
    return bool(chat_id) and bool(_SAFE_ID.match(chat_id))


def title_from_message(text: str, limit: int = TITLE_MAX_CHARS) -> str:
    """Short title from a first message: reasoning blocks dropped, whitespace collapsed, cut to limit."""
    cleaned = " ".join(_THINK_RE.sub("", text or "").split())
    if not cleaned:
        return DEFAULT_TITLE
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: limit - 3].rstrip() + "..."


@dataclass(frozen=True)
class ChatSummary:
    id: str
    title: str
    provider: Optional[str]
    model: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    # user/assistant turns only
    message_count: int
    temporary_title: bool = True


class Transcript:
    """
    One saved chat.
    - If root_dir is provided: append-only JSONL at <root_dir>/<chat_id>.jsonl
    - If root_dir is None: in-memory only
    - An existing file for chat_id is replayed, so a chat resumes where it stopped

    Records: header (title, provider, model), message (role, content, status),
    meta (changed header fields) and clear. Every record carries a UTC ts.
    """

    def __init__(self, chat_id: Optional[str] = None, root_dir: Optional[Path] = None, meta: Optional[Dict[str, Any]] = None):
        self._chat_id = chat_id or new_chat_id()
        if not is_valid_chat_id(self._chat_id):
            raise ValueError(f"Invalid chat id '{self._chat_id}'")
        self._root_dir = Path(root_dir) if root_dir else None
        self._path: Optional[Path] = None
        self._messages: List[Message] = []
        self._meta: Dict[str, Any] = {
            "title": DEFAULT_TITLE,
            "temporary_title": True,
            "provider": None,
            "model": None,
            "created_at": None,
        }
        self._updated_at: Optional[str] = None

        if self._root_dir:
            self._root_dir.mkdir(parents=True, exist_ok=True)
            self._path = self._root_dir / f"{self._chat_id}.jsonl"
            if self._path.exists() and self._path.stat().st_size > 0:
                self._load_from_file()
                return

        header = {k: v for k, v in (meta or {}).items() if k in _META_FIELDS}
        self._write({"type": "header", "meta": header})

    # ----- views -----

    @property
    def chat_id(self) -> str:
        return self._chat_id

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def messages(self) -> List[Message]:
        return [dict(m) for m in self._messages]

    @property
    def title(self) -> str:
        return self._meta["title"]

    @property
    def temporary_title(self) -> bool:
        return bool(self._meta["temporary_title"])

    @property
    def provider(self) -> Optional[str]:
        return self._meta["provider"]

    @property
    def model(self) -> Optional[str]:
        return self._meta["model"]

    @property
    def created_at(self) -> Optional[str]:
        return self._meta["created_at"]

    @property
    def updated_at(self) -> Optional[str]:
        return self._updated_at

    def summary(self) -> ChatSummary:
        return ChatSummary(
            id=self._chat_id,
            title=self.title,
            provider=self.provider,
            model=self.model,
            created_at=self.created_at,
            updated_at=self.updated_at,
            message_count=sum(1 for m in self._messages if m["role"] != "system"),
            temporary_title=self.temporary_title,
        )

    # ----- writes -----

    def append_message(self, role: Role, content: str, status: Status = "complete") -> None:
        if role not in _ROLES:
            raise ValueError(f"Unknown role '{role}'")
        self._write({"type": "message", "role": role, "content": content, "status": status})

    def update_meta(self, **fields: Any) -> None:
        unknown = set(fields) - set(_META_FIELDS)
        if unknown:
            raise ValueError(f"Unknown chat fields: {', '.join(sorted(unknown))}")
        changed = {k: v for k, v in fields.items() if self._meta.get(k) != v}
        if changed:
            self._write({"type": "meta", "meta": changed})

    def rename(self, title: str) -> None:
        title = " ".join((title or "").split())
        if not title:
            raise ValueError("Title must not be empty")
        self.update_meta(title=title, temporary_title=False)

    def title_from(self, first_message: str) -> bool:
        """Replace a placeholder title with one taken from first_message. False when nothing changed."""
        if not self.temporary_title:
            return False
        title = title_from_message(first_message)
        if title == DEFAULT_TITLE:
            return False
        self.rename(title)
        return True

    def clear(self) -> None:
        """Drop every non-system message; the chat and its title stay."""
        self._write({"type": "clear"})

    # ----- internal -----

    def _write(self, record: Dict[str, Any]) -> None:
        record = {"type": record["type"], "ts": _now(), **{k: v for k, v in record.items() if k != "type"}}
        if self._path is not None:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._apply(record)

    def _apply(self, record: Dict[str, Any]) -> None:
        kind = record.get("type")
        if kind in ("header", "meta"):
            fields = record.get("meta") or {}
            for key in _META_FIELDS:
                if key in fields:
                    self._meta[key] = fields[key]
            if kind == "header":
                self._meta["created_at"] = fields.get("created_at") or record.get("ts")
        elif kind == "message":
            if record.get("role") not in _ROLES:
                return
            self._messages.append({"role": record["role"], "content": str(record.get("content", ""))})
        elif kind == "clear":
            self._messages = [m for m in self._messages if m["role"] == "system"]
        else:
            return
        if record.get("ts"):
            self._updated_at = record["ts"]

    def _load_from_file(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    logger.warning("Skipping unreadable line %d in %s", lineno, self._path)
                    continue
                if isinstance(record, dict):
                    self._apply(record)


class ChatHistory:
    """
    Saved chats, one Transcript per chat under root_dir (in memory when root_dir is None).
    Open transcripts are cached so every caller of one chat shares one object.
    """

    def __init__(self, root_dir: Optional[Path] = None):
        self._root_dir = Path(root_dir) if root_dir else None
        self._open: Dict[str, Transcript] = {}
        self._lock = threading.RLock()

    @property
    def root_dir(self) -> Optional[Path]:
        return self._root_dir

    def _file(self, chat_id: str) -> Optional[Path]:
        return self._root_dir / f"{chat_id}.jsonl" if self._root_dir else None

    def exists(self, chat_id: str) -> bool:
        if not is_valid_chat_id(chat_id):
            return False
        with self._lock:
            if chat_id in self._open:
                return True
        path = self._file(chat_id)
        return path is not None and path.is_file()

    def create(self, provider: Optional[str] = None, model: Optional[str] = None, chat_id: Optional[str] = None) -> Transcript:
        with self._lock:
            if chat_id and self.exists(chat_id):
                raise ValueError(f"Chat '{chat_id}' already exists")
            transcript = Transcript(chat_id, self._root_dir, meta={"provider": provider, "model": model})
            self._open[transcript.chat_id] = transcript
            logger.debug("Created chat %s", transcript.chat_id)
            return transcript

    def open(self, chat_id: str) -> Transcript:
        with self._lock:
            cached = self._open.get(chat_id)
            if cached is not None:
                return cached
            if not self.exists(chat_id):
                raise ChatNotFoundError(chat_id)
            transcript = Transcript(chat_id, self._root_dir)
            self._open[chat_id] = transcript
            return transcript

    def list_chats(self) -> List[ChatSummary]:
        """Most recently updated first."""
        with self._lock:
            ids = set(self._open)
            if self._root_dir and self._root_dir.is_dir():
                ids.update(p.stem for p in self._root_dir.glob("*.jsonl") if is_valid_chat_id(p.stem))
            summaries = [self.open(chat_id).summary() for chat_id in ids]
        return sorted(summaries, key=lambda s: (s.updated_at or "", s.id), reverse=True)

    def rename(self, chat_id: str, title: str) -> ChatSummary:
        transcript = self.open(chat_id)
        transcript.rename(title)
        return transcript.summary()

    def delete(self, chat_id: str) -> None:
        with self._lock:
            if not self.exists(chat_id):
                raise ChatNotFoundError(chat_id)
            self._open.pop(chat_id, None)
            path = self._file(chat_id)
            if path is not None and path.exists():
                path.unlink()
        logger.info("Deleted chat %s", chat_id)
