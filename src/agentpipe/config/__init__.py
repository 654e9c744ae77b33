"""Configuration models and parser for agentpipe.yaml."""

from agentpipe.config.models import (
    AgentOptions,
    AgentPipeConfig,
    McpConfig,
    McpJsonConfig,
    McpPathConfig,
    McpServersConfig,
    PermissionMode,
    TransportConfig,
)
from agentpipe.config.parser import ConfigError, find_config, load_config

__all__ = [
    "AgentOptions",
    "AgentPipeConfig",
    "ConfigError",
    "McpConfig",
    "McpJsonConfig",
    "McpPathConfig",
    "McpServersConfig",
    "PermissionMode",
    "TransportConfig",
    "find_config",
    "load_config",
]
