"""Subprocess transport: argument synthesis, supervision, framing."""

from agentpipe.transport.arguments import build_arguments
from agentpipe.transport.decoder import ControlResponseTable, FrameDecoder, MessageStream
from agentpipe.transport.process import ProcessIO, ProcessState, ProcessSupervisor
from agentpipe.transport.subprocess_cli import (
    SubprocessCLITransport,
    normalize_message,
    user_envelope,
)

__all__ = [
    "ControlResponseTable",
    "FrameDecoder",
    "MessageStream",
    "ProcessIO",
    "ProcessState",
    "ProcessSupervisor",
    "SubprocessCLITransport",
    "build_arguments",
    "normalize_message",
    "user_envelope",
]
