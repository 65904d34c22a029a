# src/polychat/tools/sidecar.py
"""
Thin pass-through to a tool server speaking MCP over a child process's stdio.
Surfaces list/call as extra capabilities next to chat; nothing more.
"""
from __future__ import annotations
import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import mcp
from mcp import stdio_client

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0


class ToolSidecarError(Exception):
    pass


class ToolNotConnectedError(ToolSidecarError):
    """list/call attempted before connect() succeeded (or after close())."""


class ToolConnectionError(ToolSidecarError):
    """The server process could not be started or did not answer in time."""


@dataclass(frozen=True)
class ToolInfo:
    name: str
    description: str = ""


@dataclass
class ToolServerSpec:
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None

    @classmethod
    def from_settings(cls, name: str, raw: Dict[str, Any]) -> "ToolServerSpec":
        return cls(
            name=name,
            command=str(raw["command"]),
            args=[str(a) for a in (raw.get("args") or [])],
            env=raw.get("env"),
        )


class ToolSidecar:
    def __init__(self, spec: ToolServerSpec):
        self.spec = spec
        self._stack: Optional[AsyncExitStack] = None
        self._session: Optional[mcp.ClientSession] = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def _open(self, stack: AsyncExitStack) -> mcp.ClientSession:
        params = mcp.StdioServerParameters(command=self.spec.command, args=self.spec.args, env=self.spec.env)
        read, write = await stack.enter_async_context(stdio_client(params))
        session = await stack.enter_async_context(mcp.ClientSession(read, write))
        await session.initialize()
        return session

    async def connect(self, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        if self.connected:
            return
        stack = AsyncExitStack()
        try:
            async with asyncio.timeout(timeout):
                self._session = await self._open(stack)
        except TimeoutError as e:
            await stack.aclose()
            raise ToolConnectionError(f"Tool server '{self.spec.name}' did not start within {timeout}s") from e
        except Exception as e:
            await stack.aclose()
            raise ToolConnectionError(f"Tool server '{self.spec.name}' failed to start: {e}") from e
        self._stack = stack
        logger.info("Connected to tool server %s", self.spec.name)

    def _require_session(self) -> mcp.ClientSession:
        if self._session is None:
            raise ToolNotConnectedError(f"Tool server '{self.spec.name}' is not connected")
        return self._session

    async def list_tools(self) -> List[ToolInfo]:
        result = await self._require_session().list_tools()
        return [ToolInfo(name=t.name, description=t.description or "") for t in result.tools]

    async def call_tool(self, name: str, args: Optional[Dict[str, Any]] = None) -> Any:
        return await self._require_session().call_tool(name, arguments=args or {})

    async def close(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()
            logger.info("Disconnected from tool server %s", self.spec.name)

    async def __aenter__(self) -> "ToolSidecar":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


def specs_from_settings(settings: Dict[str, Any]) -> Dict[str, ToolServerSpec]:
    servers = ((settings.get("tools") or {}).get("servers")) or {}
    return {name: ToolServerSpec.from_settings(name, raw) for name, raw in servers.items()}
