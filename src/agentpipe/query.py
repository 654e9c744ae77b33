"""One-shot helpers: run a prompt, yield its messages, clean up."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Iterable, Mapping
from typing import Any

from agentpipe.config.models import AgentOptions, TransportConfig
from agentpipe.messages import Message
from agentpipe.transport import SubprocessCLITransport


async def query(
    prompt: str,
    options: AgentOptions | None = None,
    config: TransportConfig | None = None,
) -> AsyncIterator[Message]:
    """Run *prompt* in one-shot mode and yield every message until the result.

    Example::

        async for message in query("What is 2 + 2?"):
            print(message)
    """
    transport = SubprocessCLITransport(config)
    try:
        stream = await transport.execute(prompt, options)
        async for message in stream:
            yield message
    finally:
        await transport.close()


async def query_stream(
    prompts: Iterable[Mapping[str, Any]] | AsyncIterable[Mapping[str, Any]],
    options: AgentOptions | None = None,
    config: TransportConfig | None = None,
) -> AsyncIterator[Message]:
    """Stream message dicts in, close stdin, and yield output until EOF."""
    transport = SubprocessCLITransport(config)
    try:
        stream = await transport.execute_stream(prompts, options, close_stdin_after=True)
        async for message in stream:
            yield message
    finally:
        await transport.close()


async def continue_query(
    prompt: str,
    options: AgentOptions | None = None,
    config: TransportConfig | None = None,
) -> AsyncIterator[Message]:
    """Like :func:`query`, continuing the most recent conversation."""
    async for message in query(prompt, (options or AgentOptions()).continuing(), config):
        yield message


async def resume_query(
    prompt: str,
    session_id: str,
    options: AgentOptions | None = None,
    config: TransportConfig | None = None,
) -> AsyncIterator[Message]:
    """Like :func:`query`, resuming *session_id*."""
    async for message in query(prompt, (options or AgentOptions()).resuming(session_id), config):
        yield message
