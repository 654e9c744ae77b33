"""SubprocessCLITransport: the CLI process as an async message transport.

Wires :func:`build_arguments`, :class:`ProcessSupervisor` and
:class:`FrameDecoder` together. Outbound messages are JSON lines on the
child's stdin; inbound messages arrive on a :class:`MessageStream` fed by a
background pump task.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import uuid
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Mapping
from typing import Any

from agentpipe.config.models import AgentOptions, TransportConfig
from agentpipe.constants import DEFAULT_SESSION_ID
from agentpipe.errors import CLIConnectionError, InvalidStateError
from agentpipe.helpers import format_stderr_preview, preview
from agentpipe.transport.arguments import build_arguments
from agentpipe.transport.decoder import ControlResponseTable, FrameDecoder, MessageStream
from agentpipe.transport.process import ProcessIO, ProcessState, ProcessSupervisor

logger = logging.getLogger(__name__)

# Shared by every transport in the process so ids never repeat.
_request_counter = itertools.count(1)

Prompts = Iterable[Mapping[str, Any]] | AsyncIterable[Mapping[str, Any]]


def user_envelope(content: str, session_id: str = DEFAULT_SESSION_ID) -> dict[str, Any]:
    """Wrap plain text in the CLI's streaming user-message envelope."""
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
        "session_id": session_id,
    }


def normalize_message(message: Mapping[str, Any], session_id: str) -> dict[str, Any]:
    """Turn a loose prompt dict into a wire message.

    Dicts without ``type`` become user envelopes; dicts without
    ``session_id`` get *session_id*.
    """
    if "type" not in message:
        content = message.get("content")
        if not isinstance(content, str):
            content = json.dumps(dict(message))
        return user_envelope(content, session_id)
    normalized = dict(message)
    normalized.setdefault("session_id", session_id)
    return normalized


async def _iterate(prompts: Prompts) -> AsyncIterator[Mapping[str, Any]]:
    if isinstance(prompts, AsyncIterable):
        async for item in prompts:
            yield item
    else:
        for item in prompts:
            yield item


class SubprocessCLITransport:
    """One CLI process, driven over stdin/stdout JSON lines.

    Usage::

        async with SubprocessCLITransport() as transport:
            stream = await transport.connect(options)
            await transport.send(user_envelope("hello"))
            async for message in stream:
                ...
    """

    def __init__(self, config: TransportConfig | None = None) -> None:
        self._config = config or TransportConfig()
        self._supervisor = ProcessSupervisor(self._config)
        self._table = ControlResponseTable()
        self._decoder: FrameDecoder | None = None
        self._stream: MessageStream | None = None

    @property
    def config(self) -> TransportConfig:
        return self._config

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def is_running(self) -> bool:
        return self._supervisor.is_running

    @property
    def session_id(self) -> str | None:
        """Session id from the most recent message that carried one."""
        if self._decoder is None:
            return None
        return self._decoder.session_id

    @property
    def stream(self) -> MessageStream | None:
        return self._stream

    def stderr(self) -> str:
        """Captured stderr so far (best effort)."""
        return self._supervisor.stderr_contents()

    # ------------------------------------------------------------------ #
    # Modes
    # ------------------------------------------------------------------ #

    async def execute(self, prompt: str, options: AgentOptions | None = None) -> MessageStream:
        """One-shot mode: send *prompt*, close stdin, stream until the result."""
        io = await self._start(streaming=False, options=options)
        stream = self._open_stream(io, close_on_result=True)
        logger.debug("→ prompt: %s", preview(prompt))
        try:
            await self._supervisor.write(prompt.encode())
            await self._supervisor.close_stdin()
        except Exception:
            await self.close()
            raise
        return stream

    async def execute_stream(
        self,
        prompts: Prompts,
        options: AgentOptions | None = None,
        *,
        close_stdin_after: bool = True,
        close_on_result: bool = False,
    ) -> MessageStream:
        """Streaming mode fed from *prompts* by a background writer."""
        io = await self._start(streaming=True, options=options)
        stream = self._open_stream(io, close_on_result=close_on_result)
        writer = asyncio.create_task(self._write_prompts(prompts, close_stdin_after))
        self._supervisor.track(writer)
        return stream

    async def connect(self, options: AgentOptions | None = None) -> MessageStream:
        """Persistent mode: stdin stays open for :meth:`send`."""
        io = await self._start(streaming=True, options=options)
        return self._open_stream(io, close_on_result=False)

    async def _start(self, *, streaming: bool, options: AgentOptions | None) -> ProcessIO:
        arguments = build_arguments(streaming, options)
        env = dict(os.environ)
        cwd = None
        if options is not None:
            env.update(options.env)
            cwd = options.cwd
        io = await self._supervisor.start(arguments, cwd=cwd, env=env)
        logger.info(
            "CLI transport connected (%s mode, pid %s)",
            "streaming" if streaming else "one-shot",
            self._supervisor.pid,
        )
        return io

    def _open_stream(self, io: ProcessIO, *, close_on_result: bool) -> MessageStream:
        self._table = ControlResponseTable()
        decoder = FrameDecoder(self._config, self._table, close_on_result=close_on_result)
        stream = MessageStream()
        self._decoder = decoder
        self._stream = stream
        pump = asyncio.create_task(self._pump(decoder, io, stream))
        self._supervisor.track(pump)
        return stream

    async def _pump(self, decoder: FrameDecoder, io: ProcessIO, stream: MessageStream) -> None:
        await decoder.pump(io.stdout, stream)
        code = self._supervisor.returncode
        if code is not None and code != 0:
            stderr_text = self._supervisor.stderr_contents()
            if stderr_text:
                logger.warning(
                    "CLI exited with code %d. Stderr:\n  %s",
                    code,
                    format_stderr_preview(stderr_text),
                )
            else:
                logger.warning("CLI exited with code %d", code)

    async def _write_prompts(self, prompts: Prompts, close_stdin_after: bool) -> None:
        try:
            async for message in _iterate(prompts):
                await self.send(normalize_message(message, DEFAULT_SESSION_ID))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Prompt writer failed: %s", exc)
            await self._supervisor.close_stdin()
            return
        if close_stdin_after:
            await self._supervisor.close_stdin()

    # ------------------------------------------------------------------ #
    # Sending
    # ------------------------------------------------------------------ #

    def _require_running(self) -> None:
        if self._supervisor.state is not ProcessState.RUNNING:
            msg = "Not connected: call connect() first"
            raise InvalidStateError(msg)

    async def send(self, message: Mapping[str, Any]) -> None:
        """Write *message* as one JSON line.

        Raises:
            InvalidStateError: If the process is not running or stdin is closed.
            UnexpectedTerminationError: If the process has exited.
            CLIConnectionError: If the pipe write fails.
        """
        self._require_running()
        line = json.dumps(message)
        logger.debug(
            "→ [%s] %s message: %s",
            message.get("session_id", "-"),
            message.get("type", "unknown"),
            preview(line),
        )
        await self._supervisor.write((line + "\n").encode())

    async def send_batch(
        self,
        messages: Iterable[Mapping[str, Any]],
        shared: Mapping[str, Any] | None = None,
    ) -> None:
        """Send several messages, normalizing loose ones.

        ``shared["session_id"]`` (default ``"default"``) fills in messages
        that have none.
        """
        self._require_running()
        session_id = str((shared or {}).get("session_id", DEFAULT_SESSION_ID))
        for message in messages:
            await self.send(normalize_message(message, session_id))

    # ------------------------------------------------------------------ #
    # Control protocol
    # ------------------------------------------------------------------ #

    async def _send_control(self, request: Mapping[str, Any]) -> str:
        request_id = f"req_{next(_request_counter)}_{uuid.uuid4().hex[:8]}"
        await self.send(
            {"type": "control_request", "request_id": request_id, "request": dict(request)}
        )
        return request_id

    async def send_control_request(
        self,
        request: Mapping[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a control request and wait for its correlated response.

        Raises:
            RequestTimeoutError: If no response arrives within *timeout*
                (default ``config.control_timeout``).
            CLIConnectionError: If the CLI answers with an ``error`` subtype.
        """
        request_id = await self._send_control(request)
        wait = self._config.control_timeout if timeout is None else timeout
        response = await self._table.wait(request_id, wait)
        if response.get("subtype") == "error":
            msg = str(response.get("error") or f"Control request {request_id} failed")
            raise CLIConnectionError(msg)
        return response

    async def interrupt(self) -> None:
        """Ask the CLI to stop the current turn. Does not wait for the reply."""
        request_id = await self._send_control({"subtype": "interrupt"})
        self._table.forget(request_id)
        logger.info("Interrupt sent (%s)", request_id)

    # ------------------------------------------------------------------ #
    # Cleanup
    # ------------------------------------------------------------------ #

    async def close(self) -> None:
        """Terminate the process and end the stream. Idempotent."""
        await self._supervisor.terminate()
        if self._stream is not None:
            self._stream.finish()

    async def __aenter__(self) -> SubprocessCLITransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
