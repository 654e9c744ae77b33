"""agentpipe: drive an agent CLI over its stdin/stdout JSON protocol."""

from agentpipe.config import AgentOptions, TransportConfig
from agentpipe.connection import ConnectionManager
from agentpipe.errors import (
    AgentPipeError,
    CLIConnectionError,
    DecodeError,
    InvalidStateError,
    RequestTimeoutError,
    UnexpectedTerminationError,
)
from agentpipe.messages import (
    AssistantMessage,
    GenericMessage,
    Message,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    UserMessage,
)
from agentpipe.query import continue_query, query, query_stream, resume_query
from agentpipe.transport import SubprocessCLITransport

__version__ = "0.1.0"

__all__ = [
    "AgentOptions",
    "AgentPipeError",
    "AssistantMessage",
    "CLIConnectionError",
    "ConnectionManager",
    "DecodeError",
    "GenericMessage",
    "InvalidStateError",
    "Message",
    "RequestTimeoutError",
    "ResultMessage",
    "StreamEvent",
    "SubprocessCLITransport",
    "SystemMessage",
    "TransportConfig",
    "UnexpectedTerminationError",
    "UserMessage",
    "continue_query",
    "query",
    "query_stream",
    "resume_query",
]
