"""Shared constants for the agentpipe runtime."""

from __future__ import annotations

#: Default CLI executable name (resolved through ``PATH``).
DEFAULT_CLI_PATH = "claude"

#: Env var the CLI reads to learn which front-end launched it.
ENTRYPOINT_ENV = "CLAUDE_CODE_ENTRYPOINT"

#: Value written to :data:`ENTRYPOINT_ENV` unless the caller sets one.
DEFAULT_ENTRYPOINT = "sdk-py"

#: Maximum size of the frame buffer (1 MB).
DEFAULT_MAX_BUFFER_SIZE = 1_048_576

#: Seconds to wait for a control response.
DEFAULT_CONTROL_TIMEOUT = 30.0

#: Seconds to wait after SIGTERM before escalating to SIGINT.
DEFAULT_TERMINATE_TIMEOUT = 5.0

#: Seconds to wait after SIGINT before SIGKILL.
DEFAULT_KILL_GRACE = 1.0

#: Session id used when the caller has none yet.
DEFAULT_SESSION_ID = "default"

#: Max characters of a frame to include in log lines.
LOG_PREVIEW_LEN = 200

#: Number of finished control request ids remembered for dropping late replies.
CLOSED_REQUEST_MEMORY = 256
