"""Pydantic v2 models for CLI invocation options and transport settings."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
)

from agentpipe.constants import (
    DEFAULT_CLI_PATH,
    DEFAULT_CONTROL_TIMEOUT,
    DEFAULT_ENTRYPOINT,
    DEFAULT_KILL_GRACE,
    DEFAULT_MAX_BUFFER_SIZE,
    DEFAULT_TERMINATE_TIMEOUT,
)

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]


# ---------------------------------------------------------------------- #
# MCP server configuration variants
# ---------------------------------------------------------------------- #


class McpServersConfig(BaseModel):
    """MCP servers given as a mapping, serialized inline as JSON."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["servers"] = "servers"
    servers: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Server name -> server definition",
    )


class McpJsonConfig(BaseModel):
    """MCP configuration given as a ready-made JSON string."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["json"] = "json"
    value: str = Field(description="Raw JSON passed verbatim to --mcp-config")


class McpPathConfig(BaseModel):
    """MCP configuration stored in a file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["path"] = "path"
    path: Path = Field(description="Path to an MCP config file")


def _mcp_discriminator(v: Any) -> str:
    if isinstance(v, dict):
        return str(v.get("kind", ""))
    return str(getattr(v, "kind", ""))


McpConfig = Annotated[
    Annotated[McpServersConfig, Tag("servers")]
    | Annotated[McpJsonConfig, Tag("json")]
    | Annotated[McpPathConfig, Tag("path")],
    Discriminator(_mcp_discriminator),
]
"""Tagged variant of the three ways to hand MCP servers to the CLI."""


# ---------------------------------------------------------------------- #
# Invocation options
# ---------------------------------------------------------------------- #


class AgentOptions(BaseModel):
    """Immutable snapshot of everything that affects how the CLI is invoked.

    Instances are never mutated; use :meth:`with_updates`, :meth:`continuing`
    or :meth:`resuming` to derive a new snapshot.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    system_prompt: str | None = Field(
        default=None,
        description="Replaces the CLI's default system prompt",
    )
    append_system_prompt: str | None = Field(
        default=None,
        description="Appended to the system prompt",
    )
    max_turns: int | None = Field(
        default=None,
        ge=1,
        description="Maximum agentic turns per prompt",
    )
    allowed_tools: tuple[str, ...] = Field(
        default=(),
        description="Tools the agent may use without asking",
    )
    disallowed_tools: tuple[str, ...] = Field(
        default=(),
        description="Tools the agent may never use",
    )
    model: str | None = Field(
        default=None,
        description="Model identifier, e.g. 'claude-sonnet-4-5'",
    )
    permission_mode: PermissionMode | None = Field(
        default=None,
        description="Permission mode for tool use",
    )
    permission_prompt_tool_name: str | None = Field(
        default=None,
        description="MCP tool that answers permission prompts",
    )
    continue_conversation: bool = Field(
        default=False,
        description="Continue the most recent conversation",
    )
    resume: str | None = Field(
        default=None,
        description="Session id to resume",
    )
    settings: str | None = Field(
        default=None,
        description="Settings file path or inline JSON",
    )
    cwd: Path | None = Field(
        default=None,
        description="Working directory of the CLI process",
    )
    add_dirs: tuple[Path, ...] = Field(
        default=(),
        description="Extra directories the agent may access",
    )
    mcp_servers: McpConfig | None = Field(
        default=None,
        description="MCP servers as a mapping, a JSON string, or a file path",
    )
    extra_args: dict[str, str | None] = Field(
        default_factory=dict,
        description="Additional CLI flags (None value = boolean flag)",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the CLI process",
    )

    @field_validator("mcp_servers", mode="before")
    @classmethod
    def _coerce_mcp(cls, value: Any) -> Any:
        if value is None or isinstance(value, BaseModel):
            return value
        if isinstance(value, Path):
            return {"kind": "path", "path": value}
        if isinstance(value, str):
            if value.lstrip().startswith("{"):
                return {"kind": "json", "value": value}
            return {"kind": "path", "path": value}
        if isinstance(value, dict) and "kind" not in value:
            # Accept both {"name": {...}} and {"mcpServers": {"name": {...}}}.
            if set(value) == {"mcpServers"}:
                return {"kind": "servers", "servers": value["mcpServers"]}
            return {"kind": "servers", "servers": value}
        return value

    # ------------------------------------------------------------------ #
    # Derived snapshots
    # ------------------------------------------------------------------ #

    def with_updates(self, **changes: Any) -> AgentOptions:
        """Return a validated copy with *changes* applied."""
        unknown = sorted(set(changes) - set(type(self).model_fields))
        if unknown:
            joined = ", ".join(f"'{n}'" for n in unknown)
            msg = f"Unknown option(s): {joined}"
            raise ValueError(msg)
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def continuing(self) -> AgentOptions:
        """Copy that continues the most recent conversation."""
        return self.with_updates(continue_conversation=True, resume=None)

    def resuming(self, session_id: str) -> AgentOptions:
        """Copy that resumes *session_id*."""
        return self.with_updates(resume=session_id, continue_conversation=False)


# ---------------------------------------------------------------------- #
# Transport settings
# ---------------------------------------------------------------------- #


class TransportConfig(BaseModel):
    """Settings for a transport and its supervisor/decoder.

    Passed explicitly to every constructor; there is no process-wide
    configuration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    cli_path: str = Field(
        default=DEFAULT_CLI_PATH,
        description="CLI executable name or path",
    )
    max_buffer_size: int = Field(
        default=DEFAULT_MAX_BUFFER_SIZE,
        gt=0,
        description="Maximum bytes buffered while reassembling a JSON frame",
    )
    control_timeout: float = Field(
        default=DEFAULT_CONTROL_TIMEOUT,
        gt=0,
        description="Seconds to wait for a control response",
    )
    terminate_timeout: float = Field(
        default=DEFAULT_TERMINATE_TIMEOUT,
        gt=0,
        description="Seconds to wait for exit after SIGTERM",
    )
    kill_grace: float = Field(
        default=DEFAULT_KILL_GRACE,
        ge=0,
        description="Seconds to wait after SIGINT before SIGKILL",
    )
    entrypoint: str = Field(
        default=DEFAULT_ENTRYPOINT,
        description="Value of the entrypoint marker env var",
    )


class AgentPipeConfig(BaseModel):
    """Top-level agentpipe.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    options: AgentOptions = Field(
        default_factory=AgentOptions,
        description="CLI invocation options",
    )
    transport: TransportConfig = Field(
        default_factory=TransportConfig,
        description="Transport settings",
    )
