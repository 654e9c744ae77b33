"""Shared fakes for subprocess-level tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest


class MockAsyncStdout:
    """Async-aware mock stdout that yields lines on demand.

    Lines can be added at any time via ``feed()``.  ``readline()``
    blocks until a line is available or ``close()`` is called.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def feed_json(self, obj: dict[str, Any]) -> None:
        self.feed(json.dumps(obj).encode() + b"\n")

    def close(self) -> None:
        """Signal EOF."""
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        return await self._queue.get()


def make_mock_process(stdout: MockAsyncStdout | None = None, pid: int = 4242) -> MagicMock:
    """Create a mock subprocess with async-aware stdin/stdout.

    ``wait()`` records exit code 0 unless a test set ``returncode`` first.
    """
    proc = MagicMock()
    proc.pid = pid
    proc.returncode = None

    stdin = MagicMock()
    stdin.write = MagicMock()
    stdin.drain = AsyncMock()
    stdin.close = MagicMock()
    stdin.wait_closed = AsyncMock()
    proc.stdin = stdin

    proc.stdout = stdout if stdout is not None else MockAsyncStdout()

    async def _wait() -> int:
        if proc.returncode is None:
            proc.returncode = 0
        return proc.returncode

    proc.wait = AsyncMock(side_effect=_wait)
    proc.terminate = MagicMock()
    proc.kill = MagicMock()
    proc.send_signal = MagicMock()
    return proc


def written_lines(proc: MagicMock) -> list[dict[str, Any]]:
    """Decode every JSON line written to *proc*'s stdin."""
    data = b"".join(call.args[0] for call in proc.stdin.write.call_args_list)
    return [json.loads(line) for line in data.decode().splitlines() if line.strip()]


@pytest.fixture
def mock_stdout() -> MockAsyncStdout:
    return MockAsyncStdout()


@pytest.fixture
def mock_process(mock_stdout: MockAsyncStdout) -> MagicMock:
    return make_mock_process(mock_stdout)


@pytest.fixture
def spawn(mock_process: MagicMock) -> Iterator[AsyncMock]:
    """Patch process creation to hand out ``mock_process``."""
    with patch("asyncio.create_subprocess_exec", return_value=mock_process) as mock_exec:
        yield mock_exec


@pytest.fixture
def spawn_many() -> Iterator[Callable[[], list[MagicMock]]]:
    """Patch process creation to hand out a fresh mock process per call.

    Yields a callable returning the processes created so far.
    """
    created: list[MagicMock] = []

    async def _create(*args: Any, **kwargs: Any) -> MagicMock:
        proc = make_mock_process(pid=5000 + len(created))
        proc.spawn_args = args
        created.append(proc)
        return proc

    with patch("asyncio.create_subprocess_exec", side_effect=_create):
        yield lambda: created
