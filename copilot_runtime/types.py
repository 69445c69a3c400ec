"""
Type definitions for the Copilot runtime
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, TypedDict, Union

from typing_extensions import NotRequired

# Connection state
ConnectionState = Literal["disconnected", "connecting", "connected", "error"]

# Log level type
LogLevel = Literal["none", "error", "warning", "info", "debug", "all"]

# Model identifiers accepted by the CLI
ModelName = Literal["gpt-5", "claude-sonnet-4", "claude-sonnet-4.5", "claude-haiku-4.5"]


@dataclass
class SessionEvent:
    """
    Event emitted by the CLI for a session.

    Events are forwarded to handlers exactly as received; ``data`` is an
    opaque payload whose shape depends on ``type``.
    """

    id: str
    type: str
    data: Any
    timestamp: str
    parent_id: Optional[str] = None
    # Transient events (e.g. streaming chunks) that consumers may drop
    ephemeral: Optional[bool] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SessionEvent":
        return cls(
            id=str(d.get("id", "")),
            type=str(d.get("type", "")),
            data=d.get("data"),
            timestamp=str(d.get("timestamp", "")),
            parent_id=d.get("parentId"),
            ephemeral=d.get("ephemeral"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        if self.parent_id is not None:
            d["parentId"] = self.parent_id
        if self.ephemeral is not None:
            d["ephemeral"] = self.ephemeral
        return d


# Attachment type
class Attachment(TypedDict):
    type: Literal["file", "directory"]
    path: str
    displayName: NotRequired[str]


class CopilotClientOptions(TypedDict, total=False):
    """Settings for a CopilotClient; every key is optional."""

    cli_path: str  # Server executable; $COPILOT_CLI_PATH or "copilot"
    cli_args: list[str]  # Placed ahead of --server and friends
    cwd: str  # Child working directory; defaults to ours
    port: int  # TCP listen port, 0 lets the server choose
    use_stdio: bool  # Pipes (True, default) or TCP
    # Attach to a running server: "port", "host:port" or "http(s)://host:port".
    # Cannot be combined with cli_path or use_stdio.
    cli_url: str
    log_level: LogLevel  # Passed to the server as --log-level; "info" by default
    auto_start: bool  # create_session() connects on demand (default True)
    auto_restart: bool  # Restart after an unexpected exit (default True)
    env: dict[str, str]  # Replaces the child environment


ToolResultType = Literal["success", "failure", "rejected", "denied"]


class ToolBinaryResult(TypedDict, total=False):
    data: str
    mimeType: str
    type: str
    description: str


class ToolResult(TypedDict, total=False):
    """Result of a tool invocation."""

    textResultForLlm: str
    binaryResultsForLlm: list[ToolBinaryResult]
    resultType: ToolResultType
    error: str
    sessionLog: str
    toolTelemetry: dict[str, Any]


class ToolInvocation(TypedDict):
    session_id: str
    tool_call_id: str
    tool_name: str
    arguments: Any


# A plain string is shorthand for a successful text result
ToolHandlerResult = Union[ToolResult, str, None]

ToolHandler = Callable[
    [ToolInvocation], Union[ToolHandlerResult, Awaitable[ToolHandlerResult]]
]


@dataclass
class Tool:
    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] | None = None


class ToolCallResponsePayload(TypedDict):
    result: ToolResult


class SessionConfig(TypedDict, total=False):
    """Arguments to CopilotClient.create_session()."""

    session_id: str  # Optional custom session ID; the server generates one otherwise
    model: ModelName
    tools: list[Tool]  # Tools exposed to the CLI server


class MessageOptions(TypedDict):
    """One user turn for CopilotSession.send()."""

    prompt: str
    attachments: NotRequired[list[Attachment]]
    # Message processing mode ("enqueue" is the server default)
    mode: NotRequired[Literal["enqueue", "immediate"]]


# Event handler type
SessionEventHandler = Callable[[SessionEvent], None]


class StopError(TypedDict):
    """Error collected while stopping a client"""

    message: str


# Options for query()
class QueryOptions(TypedDict):
    """Options for the query() function"""

    prompt: str  # The prompt/question to send
    model: NotRequired[ModelName]
    cli_path: NotRequired[str]
    # Extra arguments passed to the CLI before the runtime-managed ones
    cli_args: NotRequired[list[str]]
    cwd: NotRequired[str]
    log_level: NotRequired[LogLevel]  # default: "error"
    attachments: NotRequired[list[Attachment]]
    # Maximum time to wait for the turn to complete, in milliseconds (default: 60000)
    timeout: NotRequired[int]
    # Yield ephemeral events such as streaming chunks (default: True)
    include_ephemeral: NotRequired[bool]
    # Tools to expose to the CLI for cross-process tool calls
    tools: NotRequired[list[Tool]]


# Options for ask()
class AskOptions(TypedDict, total=False):
    """Options for the ask() helper"""

    model: ModelName
    cli_path: str
    cli_args: list[str]
    cwd: str
    log_level: LogLevel  # default: "error"
    attachments: list[Attachment]
    # Called for each event received; exceptions it raises abort the interaction
    on_event: Callable[[SessionEvent], None]
    timeout: int  # milliseconds (default: 60000)
    tools: list[Tool]


@dataclass
class AskResult:
    """Result of ask()"""

    content: str  # Content of the final assistant message
    events: list[SessionEvent]  # All events that occurred during the interaction
    completed: bool  # Whether the interaction completed successfully
    error: Optional[BaseException] = None
