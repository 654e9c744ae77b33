"""Frame decoding for the CLI's stdout.

Turns an arbitrary line stream into complete JSON objects, routes control
responses to :class:`ControlResponseTable`, and publishes everything else on
a :class:`MessageStream`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any

from pydantic import ValidationError

from agentpipe.config.models import TransportConfig
from agentpipe.constants import CLOSED_REQUEST_MEMORY
from agentpipe.errors import (
    CLIConnectionError,
    DecodeError,
    RequestTimeoutError,
    UnexpectedTerminationError,
)
from agentpipe.helpers import preview
from agentpipe.messages import Message, ResultMessage, parse_message

logger = logging.getLogger(__name__)

_END = object()


class ControlResponseTable:
    """Request id -> control response payload.

    Written by the decoder, read by the caller awaiting :meth:`wait`. All
    mutation happens on the event loop with no ``await`` between checking
    and updating the maps, so the loop is the exclusive section.

    Policy for repeated ids: while unconsumed, a later response overwrites
    an earlier one. Once an id has been consumed, timed out, or forgotten,
    further responses for it are dropped. Only the most recent
    *closed_memory* finished ids are remembered; a reply for an older one
    is stored like any other until the table is discarded.
    """

    def __init__(self, closed_memory: int = CLOSED_REQUEST_MEMORY) -> None:
        self._responses: dict[str, dict[str, Any]] = {}
        self._waiters: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._closed_ids: OrderedDict[str, None] = OrderedDict()
        self._closed_memory = closed_memory
        self._failure: Exception | None = None

    @property
    def pending(self) -> int:
        """Number of callers currently waiting."""
        return len(self._waiters)

    def set(self, request_id: str, response: dict[str, Any]) -> None:
        """Store *response* and wake the waiter for *request_id*, if any."""
        if request_id in self._closed_ids:
            logger.debug("Dropping late control response for %s", request_id)
            return

        waiter = self._waiters.pop(request_id, None)
        if waiter is not None and not waiter.done():
            self._close(request_id)
            waiter.set_result(response)
            return

        if request_id in self._responses:
            logger.warning("Duplicate control response for %s, overwriting", request_id)
        self._responses[request_id] = response

    async def wait(self, request_id: str, timeout: float) -> dict[str, Any]:
        """Return the response for *request_id*, consuming it.

        Raises:
            RequestTimeoutError: If no response arrives within *timeout*.
            UnexpectedTerminationError: If the output stream has ended.
        """
        if request_id in self._responses:
            self._close(request_id)
            return self._responses.pop(request_id)
        if self._failure is not None:
            raise self._failure

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._waiters[request_id] = future
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            msg = f"No control response for {request_id} within {timeout}s"
            raise RequestTimeoutError(msg, timeout=timeout) from None
        finally:
            self._waiters.pop(request_id, None)
            self._close(request_id)

    def forget(self, request_id: str) -> None:
        """Stop tracking *request_id*; any response for it is dropped."""
        self._close(request_id)
        self._responses.pop(request_id, None)
        waiter = self._waiters.pop(request_id, None)
        if waiter is not None and not waiter.done():
            waiter.cancel()

    def _close(self, request_id: str) -> None:
        self._closed_ids[request_id] = None
        self._closed_ids.move_to_end(request_id)
        while len(self._closed_ids) > self._closed_memory:
            self._closed_ids.popitem(last=False)

    def fail_all(self, exc: Exception) -> None:
        """Fail every current and future waiter with *exc*."""
        self._failure = exc
        waiters = list(self._waiters.values())
        self._waiters.clear()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(exc)


class MessageStream:
    """Async iterator over decoded messages, in the order the CLI wrote them.

    Finishes exactly once: cleanly, or by raising the terminal error to the
    consumer after all previously queued messages have been yielded.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._finished = False
        self._exhausted = False
        self._error: Exception | None = None

    @property
    def finished(self) -> bool:
        return self._finished

    def put(self, message: Message) -> None:
        if self._finished:
            return
        self._queue.put_nowait(message)

    def finish(self, error: Exception | None = None) -> None:
        """End the stream, optionally with *error*. Idempotent."""
        if self._finished:
            return
        self._finished = True
        self._error = error
        self._queue.put_nowait(_END)

    async def aclose(self) -> None:
        self.finish()

    def __aiter__(self) -> MessageStream:
        return self

    async def __anext__(self) -> Message:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._exhausted = True
            error, self._error = self._error, None
            if error is not None:
                raise error
            raise StopAsyncIteration
        return item


class FrameDecoder:
    """Reassembles JSON frames and dispatches them.

    Tolerates several objects on one physical line, one object split over
    several lines, and blank lines. The reassembly buffer never exceeds
    ``max_buffer_size``; going over is fatal for the stream.
    """

    def __init__(
        self,
        config: TransportConfig | None = None,
        table: ControlResponseTable | None = None,
        *,
        close_on_result: bool = True,
    ) -> None:
        self._max_buffer_size = (config or TransportConfig()).max_buffer_size
        self.table = table if table is not None else ControlResponseTable()
        self.close_on_result = close_on_result
        self.session_id: str | None = None
        self._buffer = ""
        self._json = json.JSONDecoder()

    @property
    def buffered(self) -> int:
        """Characters currently held for an incomplete frame."""
        return len(self._buffer)

    # ------------------------------------------------------------------ #
    # Reassembly
    # ------------------------------------------------------------------ #

    def feed(self, text: str) -> list[dict[str, Any]]:
        """Consume *text* and return every JSON object it completes.

        Raises:
            DecodeError: If the buffer would exceed ``max_buffer_size``. The
                buffer is cleared first.
        """
        frames: list[dict[str, Any]] = []
        for raw in text.split("\n"):
            fragment = raw.strip()
            if not fragment:
                continue
            if len(self._buffer) + len(fragment) > self._max_buffer_size:
                self._buffer = ""
                msg = (
                    "JSON frame would exceed the maximum buffer size of "
                    f"{self._max_buffer_size} bytes"
                )
                raise DecodeError(msg, line=preview(fragment))
            self._buffer += fragment
            frames.extend(self._drain_buffer())
        return frames

    def _drain_buffer(self) -> list[dict[str, Any]]:
        frames: list[dict[str, Any]] = []
        while self._buffer:
            try:
                obj, end = self._json.raw_decode(self._buffer)
            except json.JSONDecodeError:
                # Incomplete frame or stray text; both wait for more input.
                break
            self._buffer = self._buffer[end:].lstrip()
            if isinstance(obj, dict):
                frames.append(obj)
            else:
                logger.warning("Dropping non-object JSON frame: %s", preview(repr(obj)))
        return frames

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def dispatch(self, obj: dict[str, Any]) -> Message | None:
        """Route one frame.

        Control responses go to the table and return None; anything else is
        validated into a :data:`Message`.

        Raises:
            DecodeError: If the frame does not match its message type.
        """
        if obj.get("type") == "control_response":
            response = obj.get("response")
            if isinstance(response, dict):
                request_id = response.get("request_id")
                if isinstance(request_id, str):
                    logger.debug("← control response for %s", request_id)
                    self.table.set(request_id, response)
                    return None

        try:
            message = parse_message(obj)
        except ValidationError as exc:
            msg = f"Invalid {obj.get('type')!r} message from CLI: {exc}"
            raise DecodeError(msg, line=preview(json.dumps(obj), 500)) from exc

        if message.session_id:
            self.session_id = message.session_id
        logger.debug(
            "← [%s] %s message: %s",
            message.session_id or "-",
            message.type,
            preview(json.dumps(obj)),
        )
        if isinstance(message, ResultMessage):
            logger.info(
                "Result [session:%s]: cost=%s duration=%.1fs turns=%d",
                message.session_id,
                f"${message.total_cost_usd}" if message.total_cost_usd is not None else "N/A",
                message.duration_ms / 1000.0,
                message.num_turns,
            )
        return message

    # ------------------------------------------------------------------ #
    # Reader task
    # ------------------------------------------------------------------ #

    async def pump(self, reader: asyncio.StreamReader, stream: MessageStream) -> None:
        """Read *reader* to EOF, publishing messages on *stream*.

        EOF finishes the stream cleanly; decode and I/O failures finish it
        with the error. In ``close_on_result`` mode the stream finishes right
        after the first result message. Pending control waiters are failed
        on every exit path.
        """
        error: Exception | None = None
        try:
            while True:
                try:
                    line_bytes = await reader.readline()
                except ValueError as exc:
                    # Line exceeded the StreamReader limit.
                    msg = (
                        "CLI output line exceeded the maximum buffer size of "
                        f"{self._max_buffer_size} bytes"
                    )
                    raise DecodeError(msg) from exc

                if not line_bytes:
                    if self._buffer:
                        logger.warning(
                            "Discarding unparsed CLI output at EOF: %s", preview(self._buffer)
                        )
                    break

                for obj in self.feed(line_bytes.decode(errors="replace")):
                    message = self.dispatch(obj)
                    if message is None:
                        continue
                    stream.put(message)
                    if self.close_on_result and isinstance(message, ResultMessage):
                        logger.debug("Closing stream after result (one-shot mode)")
                        return
        except DecodeError as exc:
            logger.error("Decode error on CLI output: %s", exc)
            error = exc
        except OSError as exc:
            logger.error("Error reading CLI output: %s", exc)
            error = CLIConnectionError(f"Failed to read CLI output: {exc}")
        finally:
            self._buffer = ""
            stream.finish(error)
            self.table.fail_all(
                UnexpectedTerminationError("CLI output ended before a control response arrived")
            )
