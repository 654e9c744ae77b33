"""Argument vector synthesis for CLI invocation.

The CLI parses flag/value pairs positionally, so the emitted order is part
of the contract and must not change:

1. ``--output-format stream-json --verbose``
2. ``--input-format stream-json`` (streaming only)
3. option-derived flags, in the order of :func:`build_arguments`
4. ``--print`` (one-shot only)
"""

from __future__ import annotations

import json

from agentpipe.config.models import (
    AgentOptions,
    McpJsonConfig,
    McpPathConfig,
    McpServersConfig,
)


def build_arguments(streaming: bool, options: AgentOptions | None = None) -> list[str]:
    """Map an options snapshot to the CLI argument vector.

    Pure: no I/O, no mutation of *options*. Absent options are omitted.
    """
    args = ["--output-format", "stream-json", "--verbose"]

    if streaming:
        args.extend(["--input-format", "stream-json"])

    if options is not None:
        _add_prompt_args(args, options)
        _add_tool_args(args, options)
        _add_model_args(args, options)
        _add_session_args(args, options)
        _add_directory_args(args, options)
        _add_mcp_args(args, options)
        _add_extra_args(args, options)

    if not streaming:
        args.append("--print")

    return args


def _add_prompt_args(args: list[str], options: AgentOptions) -> None:
    if options.system_prompt is not None:
        args.extend(["--system-prompt", options.system_prompt])
    if options.append_system_prompt is not None:
        args.extend(["--append-system-prompt", options.append_system_prompt])
    if options.max_turns is not None:
        args.extend(["--max-turns", str(options.max_turns)])


def _add_tool_args(args: list[str], options: AgentOptions) -> None:
    if options.allowed_tools:
        args.extend(["--allowedTools", ",".join(options.allowed_tools)])
    if options.disallowed_tools:
        args.extend(["--disallowedTools", ",".join(options.disallowed_tools)])


def _add_model_args(args: list[str], options: AgentOptions) -> None:
    if options.model is not None:
        args.extend(["--model", options.model])
    if options.permission_mode is not None:
        args.extend(["--permission-mode", options.permission_mode])
    if options.permission_prompt_tool_name is not None:
        args.extend(["--permission-prompt-tool", options.permission_prompt_tool_name])


def _add_session_args(args: list[str], options: AgentOptions) -> None:
    if options.continue_conversation:
        args.append("--continue")
    if options.resume is not None:
        args.extend(["--resume", options.resume])
    if options.settings is not None:
        args.extend(["--settings", options.settings])


def _add_directory_args(args: list[str], options: AgentOptions) -> None:
    for directory in options.add_dirs:
        args.extend(["--add-dir", str(directory)])


def _add_mcp_args(args: list[str], options: AgentOptions) -> None:
    mcp = options.mcp_servers
    if isinstance(mcp, McpServersConfig):
        # An empty mapping means "no servers", not "an empty config".
        if mcp.servers:
            args.extend(["--mcp-config", json.dumps({"mcpServers": mcp.servers})])
    elif isinstance(mcp, McpJsonConfig):
        args.extend(["--mcp-config", mcp.value])
    elif isinstance(mcp, McpPathConfig):
        args.extend(["--mcp-config", str(mcp.path)])


def _add_extra_args(args: list[str], options: AgentOptions) -> None:
    for flag, value in options.extra_args.items():
        args.append(f"--{flag}")
        if value is not None:
            args.append(value)
