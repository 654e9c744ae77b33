"""ConnectionManager: owns the active transport and rebuilds it on demand.

Reconnection tears the process down completely and starts a fresh one with
``--continue`` or ``--resume <id>``, so the CLI restores the conversation
from its own session storage.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Mapping
from typing import Any

from agentpipe.config.models import AgentOptions, TransportConfig
from agentpipe.constants import DEFAULT_SESSION_ID
from agentpipe.errors import InvalidStateError
from agentpipe.messages import Message, ResultMessage
from agentpipe.transport import MessageStream, SubprocessCLITransport, user_envelope

logger = logging.getLogger(__name__)


class ConnectionManager:
    """At most one live (transport, stream) pair, swapped under a lock."""

    def __init__(
        self,
        options: AgentOptions | None = None,
        config: TransportConfig | None = None,
    ) -> None:
        self._options = options or AgentOptions()
        self._config = config or TransportConfig()
        self._transport: SubprocessCLITransport | None = None
        self._stream: MessageStream | None = None
        self._lock = asyncio.Lock()

    @property
    def options(self) -> AgentOptions:
        return self._options

    @property
    def config(self) -> TransportConfig:
        return self._config

    @property
    def transport(self) -> SubprocessCLITransport | None:
        return self._transport

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_running

    @property
    def session_id(self) -> str | None:
        if self._transport is None:
            return None
        return self._transport.session_id

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(
        self,
        prompt: str | Iterable[Mapping[str, Any]] | AsyncIterable[Mapping[str, Any]] | None = None,
    ) -> None:
        """Start the CLI, replacing any existing connection.

        Args:
            prompt: None for a persistent connection, a string for a
                one-shot run, or an iterable of message dicts to stream in
                (stdin stays open afterwards).
        """
        async with self._lock:
            await self._disconnect_locked()
            transport = SubprocessCLITransport(self._config)
            if prompt is None:
                stream = await transport.connect(self._options)
            elif isinstance(prompt, str):
                stream = await transport.execute(prompt, self._options)
            else:
                stream = await transport.execute_stream(
                    prompt, self._options, close_stdin_after=False
                )
            self._transport = transport
            self._stream = stream

    async def disconnect(self) -> None:
        """Terminate the CLI and drop the connection. Idempotent."""
        async with self._lock:
            await self._disconnect_locked()

    async def _disconnect_locked(self) -> None:
        transport = self._transport
        self._transport = None
        self._stream = None
        if transport is not None:
            await transport.close()
            logger.info("Disconnected")

    async def reconnect(self, session_id: str | None = None) -> None:
        """Restart the CLI on the same conversation.

        With *session_id* the new process resumes that session; otherwise it
        continues the most recent one. All other options are kept.
        """
        async with self._lock:
            await self._disconnect_locked()
            if session_id is not None:
                self._options = self._options.resuming(session_id)
            else:
                self._options = self._options.continuing()
            transport = SubprocessCLITransport(self._config)
            self._stream = await transport.connect(self._options)
            self._transport = transport
            logger.info(
                "Reconnected (%s)",
                f"resume {session_id}" if session_id is not None else "continue",
            )

    async def update_settings(self, **changes: Any) -> None:
        """Apply option *changes* and reconnect so they take effect.

        The new process resumes the session the live connection reported,
        or the session already pinned with ``resume``. Only when neither is
        known does it continue the most recent conversation.

        Raises:
            ValueError: If a change names an unknown option.
            pydantic.ValidationError: If a value is invalid.
        """
        self._options = self._options.with_updates(**changes)
        logger.info("Settings updated: %s", ", ".join(sorted(changes)))
        await self.reconnect(self.session_id or self._options.resume)

    # ------------------------------------------------------------------ #
    # Messaging
    # ------------------------------------------------------------------ #

    def _require_transport(self) -> SubprocessCLITransport:
        if self._transport is None:
            msg = "Not connected: call connect() first"
            raise InvalidStateError(msg)
        return self._transport

    def receive_messages(self) -> MessageStream:
        """The active connection's message stream."""
        if self._stream is None:
            msg = "Not connected: call connect() first"
            raise InvalidStateError(msg)
        return self._stream

    async def receive_response(self) -> AsyncIterator[Message]:
        """Yield messages up to and including the next result."""
        async for message in self.receive_messages():
            yield message
            if isinstance(message, ResultMessage):
                return

    async def query(
        self,
        prompt: str | Iterable[Mapping[str, Any]] | AsyncIterable[Mapping[str, Any]],
        session_id: str = DEFAULT_SESSION_ID,
    ) -> None:
        """Send a user turn (or several message dicts) on the live connection."""
        transport = self._require_transport()
        if isinstance(prompt, str):
            messages: list[Mapping[str, Any]] = [user_envelope(prompt, session_id)]
        elif isinstance(prompt, AsyncIterable):
            messages = [m async for m in prompt]
        else:
            messages = list(prompt)
        await transport.send_batch(messages, {"session_id": session_id})

    async def interrupt(self) -> None:
        await self._require_transport().interrupt()

    async def __aenter__(self) -> ConnectionManager:
        if self._transport is None:
            await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()
