"""Tests for SubprocessCLITransport modes, sending and control requests."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentpipe.config.models import AgentOptions, TransportConfig
from agentpipe.constants import ENTRYPOINT_ENV
from agentpipe.errors import (
    CLIConnectionError,
    InvalidStateError,
    RequestTimeoutError,
    UnexpectedTerminationError,
)
from agentpipe.messages import AssistantMessage, ResultMessage
from agentpipe.transport import SubprocessCLITransport, normalize_message, user_envelope

from conftest import MockAsyncStdout, written_lines

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _result(session_id: str = "s1") -> dict[str, Any]:
    return {"type": "result", "subtype": "success", "session_id": session_id}


def _assistant(text: str, session_id: str = "s1") -> dict[str, Any]:
    return {
        "type": "assistant",
        "session_id": session_id,
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


async def _collect(stream: Any) -> list[Any]:
    return [m async for m in stream]


async def _wait_for_writes(proc: MagicMock, count: int) -> list[dict[str, Any]]:
    for _ in range(100):
        lines = written_lines(proc)
        if len(lines) >= count:
            return lines
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} writes, got {written_lines(proc)}")


# ------------------------------------------------------------------ #
# Message normalization
# ------------------------------------------------------------------ #


class TestNormalizeMessage:
    def test_user_envelope(self) -> None:
        assert user_envelope("hi", "s1") == {
            "type": "user",
            "message": {"role": "user", "content": "hi"},
            "parent_tool_use_id": None,
            "session_id": "s1",
        }

    def test_content_becomes_envelope(self) -> None:
        assert normalize_message({"content": "hello"}, "s2") == user_envelope("hello", "s2")

    def test_untyped_without_content_serialized(self) -> None:
        msg = normalize_message({"foo": 1}, "s2")
        assert msg["type"] == "user"
        assert msg["message"]["content"] == '{"foo": 1}'

    def test_typed_gets_session_id(self) -> None:
        msg = normalize_message({"type": "user", "message": {}}, "s3")
        assert msg["session_id"] == "s3"

    def test_existing_session_id_kept(self) -> None:
        msg = normalize_message({"type": "user", "session_id": "mine"}, "s3")
        assert msg["session_id"] == "mine"


# ------------------------------------------------------------------ #
# One-shot mode
# ------------------------------------------------------------------ #


class TestExecute:
    async def test_one_shot(
        self, spawn: AsyncMock, mock_process: MagicMock, mock_stdout: MockAsyncStdout
    ) -> None:
        transport = SubprocessCLITransport()
        stream = await transport.execute("hello", AgentOptions(model="m"))

        args = spawn.call_args.args
        assert args[0] == "claude"
        assert args[-1] == "--print"
        assert "--input-format" not in args
        mock_process.stdin.write.assert_called_once_with(b"hello")
        mock_process.stdin.close.assert_called_once()

        mock_stdout.feed_json(_assistant("hi there"))
        mock_stdout.feed_json(_result())

        messages = await asyncio.wait_for(_collect(stream), timeout=2.0)
        assert isinstance(messages[0], AssistantMessage)
        assert isinstance(messages[1], ResultMessage)
        assert len(messages) == 2
        assert transport.session_id == "s1"

        await transport.close()
        assert not transport.is_running

    async def test_options_env_and_cwd(
        self, spawn: AsyncMock, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv(ENTRYPOINT_ENV, raising=False)
        transport = SubprocessCLITransport()
        opts = AgentOptions(cwd=tmp_path, env={"MY_VAR": "1"})
        await transport.execute("x", opts)
        kwargs = spawn.call_args.kwargs
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["env"]["MY_VAR"] == "1"
        assert kwargs["env"][ENTRYPOINT_ENV] == "sdk-py"
        await transport.close()

    async def test_host_entrypoint_preserved(
        self, spawn: AsyncMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(ENTRYPOINT_ENV, "host-tool")
        transport = SubprocessCLITransport()
        await transport.execute("x")
        assert spawn.call_args.kwargs["env"][ENTRYPOINT_ENV] == "host-tool"
        await transport.close()

    async def test_options_env_overrides_host(
        self, spawn: AsyncMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(ENTRYPOINT_ENV, "host-tool")
        transport = SubprocessCLITransport()
        await transport.execute("x", AgentOptions(env={ENTRYPOINT_ENV: "mine"}))
        assert spawn.call_args.kwargs["env"][ENTRYPOINT_ENV] == "mine"
        await transport.close()

    async def test_write_failure_closes(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        mock_process.stdin.drain = AsyncMock(side_effect=BrokenPipeError("gone"))
        transport = SubprocessCLITransport()
        with pytest.raises(CLIConnectionError):
            await transport.execute("hello")
        assert transport.supervisor.state.value == "terminated"

    async def test_custom_cli_path(self, spawn: AsyncMock) -> None:
        transport = SubprocessCLITransport(TransportConfig(cli_path="/opt/agent"))
        await transport.execute("x")
        assert spawn.call_args.args[0] == "/opt/agent"
        await transport.close()


# ------------------------------------------------------------------ #
# Streaming input mode
# ------------------------------------------------------------------ #


class TestExecuteStream:
    async def test_writes_prompts_then_closes_stdin(
        self, spawn: AsyncMock, mock_process: MagicMock, mock_stdout: MockAsyncStdout
    ) -> None:
        prompts = [{"content": "one"}, {"content": "two"}]
        transport = SubprocessCLITransport()
        stream = await transport.execute_stream(prompts)

        assert "--input-format" in spawn.call_args.args
        assert "--print" not in spawn.call_args.args

        lines = await _wait_for_writes(mock_process, 2)
        assert [line["message"]["content"] for line in lines] == ["one", "two"]
        assert all(line["session_id"] == "default" for line in lines)
        await asyncio.sleep(0.01)
        mock_process.stdin.close.assert_called_once()

        mock_stdout.feed_json(_result())
        mock_stdout.feed_json(_assistant("still open"))
        mock_stdout.close()
        messages = await asyncio.wait_for(_collect(stream), timeout=2.0)
        assert [m.type for m in messages] == ["result", "assistant"]
        await transport.close()

    async def test_async_prompts(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        async def _prompts() -> AsyncIterator[dict[str, Any]]:
            yield {"content": "a"}
            await asyncio.sleep(0)
            yield {"content": "b"}

        transport = SubprocessCLITransport()
        await transport.execute_stream(_prompts())
        lines = await _wait_for_writes(mock_process, 2)
        assert [line["message"]["content"] for line in lines] == ["a", "b"]
        await transport.close()

    async def test_keep_stdin_open(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        transport = SubprocessCLITransport()
        await transport.execute_stream([{"content": "a"}], close_stdin_after=False)
        await _wait_for_writes(mock_process, 1)
        await asyncio.sleep(0.01)
        mock_process.stdin.close.assert_not_called()
        await transport.send(user_envelope("follow-up"))
        await transport.close()

    async def test_failing_prompts_close_stdin(
        self, spawn: AsyncMock, mock_process: MagicMock
    ) -> None:
        def _prompts() -> Any:
            yield {"content": "a"}
            raise RuntimeError("source failed")

        transport = SubprocessCLITransport()
        await transport.execute_stream(_prompts(), close_stdin_after=False)
        await _wait_for_writes(mock_process, 1)
        await asyncio.sleep(0.01)
        mock_process.stdin.close.assert_called_once()
        await transport.close()

    async def test_close_on_result(
        self, spawn: AsyncMock, mock_stdout: MockAsyncStdout
    ) -> None:
        transport = SubprocessCLITransport()
        stream = await transport.execute_stream([], close_on_result=True)
        mock_stdout.feed_json(_result())
        mock_stdout.feed_json(_assistant("late"))
        messages = await asyncio.wait_for(_collect(stream), timeout=2.0)
        assert [m.type for m in messages] == ["result"]
        await transport.close()


# ------------------------------------------------------------------ #
# Persistent mode
# ------------------------------------------------------------------ #


class TestConnectAndSend:
    async def test_send_before_connect(self) -> None:
        with pytest.raises(InvalidStateError):
            await SubprocessCLITransport().send({"type": "user"})

    async def test_send_writes_one_line(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        assert "--input-format" in spawn.call_args.args

        await transport.send(user_envelope("hi", "s1"))
        data = mock_process.stdin.write.call_args.args[0]
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert written_lines(mock_process) == [user_envelope("hi", "s1")]
        await transport.close()

    async def test_send_batch(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        await transport.send_batch(
            [{"content": "a"}, {"type": "user", "message": {"role": "user", "content": "b"}}],
            {"session_id": "s9"},
        )
        lines = written_lines(mock_process)
        assert lines[0] == user_envelope("a", "s9")
        assert lines[1]["session_id"] == "s9"
        assert lines[1]["message"]["content"] == "b"
        await transport.close()

    async def test_send_batch_default_session(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        await transport.send_batch([{"content": "a"}])
        assert written_lines(mock_process)[0]["session_id"] == "default"
        await transport.close()

    async def test_send_after_exit(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        mock_process.returncode = 1
        with pytest.raises(UnexpectedTerminationError):
            await transport.send(user_envelope("hi"))
        await transport.close()

    async def test_send_after_close(self, spawn: AsyncMock) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        await transport.close()
        with pytest.raises(InvalidStateError):
            await transport.send(user_envelope("hi"))

    async def test_close_ends_stream(self, spawn: AsyncMock) -> None:
        transport = SubprocessCLITransport()
        stream = await transport.connect()
        await transport.close()
        await transport.close()
        assert await asyncio.wait_for(_collect(stream), timeout=1.0) == []

    async def test_async_with(self, spawn: AsyncMock, mock_process: MagicMock) -> None:
        async with SubprocessCLITransport() as transport:
            await transport.connect()
            assert transport.is_running
        mock_process.terminate.assert_called_once()
        assert not transport.is_running

    async def test_nonzero_exit_logged(
        self,
        spawn: AsyncMock,
        mock_process: MagicMock,
        mock_stdout: MockAsyncStdout,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        transport = SubprocessCLITransport()
        stream = await transport.connect()
        Path(spawn.call_args.kwargs["stderr"].name).write_text(
            "fatal: bad auth\n", encoding="utf-8"
        )
        assert "bad auth" in transport.stderr()

        mock_process.returncode = 2
        with caplog.at_level(logging.WARNING):
            mock_stdout.close()
            await asyncio.wait_for(_collect(stream), timeout=1.0)
            await asyncio.sleep(0.01)

        assert "exited with code 2" in caplog.text
        assert "fatal: bad auth" in caplog.text
        await transport.close()


# ------------------------------------------------------------------ #
# Control protocol
# ------------------------------------------------------------------ #


class TestControlRequests:
    async def test_response_correlated(
        self, spawn: AsyncMock, mock_process: MagicMock, mock_stdout: MockAsyncStdout
    ) -> None:
        transport = SubprocessCLITransport()
        stream = await transport.connect()

        task = asyncio.create_task(transport.send_control_request({"subtype": "initialize"}))
        request = (await _wait_for_writes(mock_process, 1))[0]
        assert request["type"] == "control_request"
        assert request["request"] == {"subtype": "initialize"}
        request_id = request["request_id"]
        assert re.fullmatch(r"req_\d+_[0-9a-f]{8}", request_id)

        mock_stdout.feed_json(_assistant("unrelated"))
        mock_stdout.feed_json(
            {
                "type": "control_response",
                "response": {"subtype": "success", "request_id": request_id, "value": 1},
            }
        )
        response = await asyncio.wait_for(task, timeout=1.0)
        assert response["value"] == 1

        mock_stdout.close()
        messages = await asyncio.wait_for(_collect(stream), timeout=1.0)
        assert [m.type for m in messages] == ["assistant"]
        await transport.close()

    async def test_error_subtype(
        self, spawn: AsyncMock, mock_process: MagicMock, mock_stdout: MockAsyncStdout
    ) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        task = asyncio.create_task(transport.send_control_request({"subtype": "x"}))
        request_id = (await _wait_for_writes(mock_process, 1))[0]["request_id"]
        mock_stdout.feed_json(
            {
                "type": "control_response",
                "response": {"subtype": "error", "request_id": request_id, "error": "nope"},
            }
        )
        with pytest.raises(CLIConnectionError, match="nope"):
            await asyncio.wait_for(task, timeout=1.0)
        await transport.close()

    async def test_timeout(self, spawn: AsyncMock) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        with pytest.raises(RequestTimeoutError):
            await transport.send_control_request({"subtype": "x"}, timeout=0.05)
        await transport.close()

    async def test_default_timeout_from_config(self, spawn: AsyncMock) -> None:
        transport = SubprocessCLITransport(TransportConfig(control_timeout=0.05))
        await transport.connect()
        with pytest.raises(RequestTimeoutError) as exc_info:
            await transport.send_control_request({"subtype": "x"})
        assert exc_info.value.timeout == 0.05
        await transport.close()

    async def test_waiter_fails_when_output_ends(
        self, spawn: AsyncMock, mock_process: MagicMock, mock_stdout: MockAsyncStdout
    ) -> None:
        transport = SubprocessCLITransport()
        await transport.connect()
        task = asyncio.create_task(transport.send_control_request({"subtype": "x"}))
        await _wait_for_writes(mock_process, 1)
        mock_stdout.close()
        with pytest.raises(UnexpectedTerminationError):
            await asyncio.wait_for(task, timeout=1.0)
        await transport.close()

    async def test_request_ids_unique_across_transports(
        self, spawn_many: Any
    ) -> None:
        ids = []
        for _ in range(3):
            transport = SubprocessCLITransport()
            await transport.connect()
            await transport.interrupt()
            proc = spawn_many()[-1]
            ids.append(written_lines(proc)[0]["request_id"])
            await transport.close()
        assert len(set(ids)) == 3
        counters = [int(i.split("_")[1]) for i in ids]
        assert counters == sorted(counters)

    async def test_interrupt_does_not_wait(
        self, spawn: AsyncMock, mock_process: MagicMock, mock_stdout: MockAsyncStdout
    ) -> None:
        transport = SubprocessCLITransport()
        stream = await transport.connect()

        await asyncio.wait_for(transport.interrupt(), timeout=1.0)
        request = written_lines(mock_process)[0]
        assert request["request"] == {"subtype": "interrupt"}

        mock_stdout.feed_json(
            {
                "type": "control_response",
                "response": {"subtype": "success", "request_id": request["request_id"]},
            }
        )
        mock_stdout.close()
        assert await asyncio.wait_for(_collect(stream), timeout=1.0) == []
        await transport.close()
