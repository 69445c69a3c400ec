"""
Copilot runtime - Python client for the GitHub Copilot CLI server

JSON-RPC based runtime for programmatic control of the Copilot CLI
"""

from .ask import ask
from .client import CopilotClient
from .jsonrpc import ConnectionClosedError, JsonRpcClient, JsonRpcError
from .process import CliServerProcess
from .query import QueryTimeoutError, SessionError, query
from .session import CopilotSession, SessionRegistry
from .tools import ToolCallDispatcher
from .types import (
    AskOptions,
    AskResult,
    Attachment,
    ConnectionState,
    CopilotClientOptions,
    LogLevel,
    MessageOptions,
    QueryOptions,
    SessionConfig,
    SessionEvent,
    SessionEventHandler,
    StopError,
    Tool,
    ToolHandler,
    ToolInvocation,
    ToolResult,
)

__version__ = "0.1.0"

__all__ = [
    "AskOptions",
    "AskResult",
    "Attachment",
    "CliServerProcess",
    "ConnectionClosedError",
    "ConnectionState",
    "CopilotClient",
    "CopilotClientOptions",
    "CopilotSession",
    "JsonRpcClient",
    "JsonRpcError",
    "LogLevel",
    "MessageOptions",
    "QueryOptions",
    "QueryTimeoutError",
    "SessionConfig",
    "SessionError",
    "SessionEvent",
    "SessionEventHandler",
    "SessionRegistry",
    "StopError",
    "Tool",
    "ToolCallDispatcher",
    "ToolHandler",
    "ToolInvocation",
    "ToolResult",
    "ask",
    "query",
]
