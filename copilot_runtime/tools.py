"""
Dispatch of ``tool.call`` requests from the CLI server to session tool handlers.
"""

import inspect
import json
import logging
from dataclasses import asdict, is_dataclass

from .session import SessionRegistry
from .types import (
    ToolCallResponsePayload,
    ToolHandler,
    ToolHandlerResult,
    ToolInvocation,
    ToolResult,
)

logger = logging.getLogger(__name__)


class ToolCallDispatcher:
    """
    Resolves tool calls against the tools registered on each session.

    Every answer sent back to the server is a well-formed ToolResult: handler
    exceptions, missing results and unknown tools all become failure results.
    Only malformed payloads and unknown sessions are protocol errors.
    """

    def __init__(self, sessions: SessionRegistry):
        self._sessions = sessions

    async def handle(self, params: dict) -> ToolCallResponsePayload:
        """
        Handle a tool call request from the CLI server.

        Args:
            params: The tool call parameters from the server.

        Returns:
            A dict containing the tool execution result.

        Raises:
            ValueError: If the request payload is invalid or the session is unknown.
        """
        session_id = params.get("sessionId") if isinstance(params, dict) else None
        tool_call_id = params.get("toolCallId") if isinstance(params, dict) else None
        tool_name = params.get("toolName") if isinstance(params, dict) else None

        if not all(isinstance(value, str) for value in (session_id, tool_call_id, tool_name)):
            raise ValueError("invalid tool call payload")

        session = self._sessions.get(session_id)
        if not session:
            raise ValueError(f"unknown session {session_id}")

        handler = session._get_tool_handler(tool_name)
        if not handler:
            logger.debug("Session %s has no handler for tool %s", session_id, tool_name)
            return {"result": self._build_unsupported_tool_result(tool_name)}

        invocation: ToolInvocation = {
            "session_id": session_id,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "arguments": params.get("arguments"),
        }
        return {"result": await self._execute_tool_call(invocation, handler)}

    async def _execute_tool_call(
        self, invocation: ToolInvocation, handler: ToolHandler
    ) -> ToolResult:
        try:
            result = handler(invocation)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Tool %s raised", invocation["tool_name"], exc_info=True)
            message = str(exc) or type(exc).__name__
            return ToolResult(
                textResultForLlm=message,
                resultType="failure",
                error=message,
                toolTelemetry={},
            )

        return self._normalize_tool_result(result)

    def _normalize_tool_result(self, result: ToolHandlerResult) -> ToolResult:
        if result is None:
            return ToolResult(
                textResultForLlm="Tool returned no result",
                resultType="failure",
                error="tool returned no result",
                toolTelemetry={},
            )
        if isinstance(result, str):
            return ToolResult(textResultForLlm=result, resultType="success")
        if is_dataclass(result) and not isinstance(result, type):
            result = asdict(result)
        if isinstance(result, dict) and "resultType" in result:
            return result  # type: ignore[return-value]
        # Anything else is data for the model; send it as text
        return ToolResult(textResultForLlm=json.dumps(result, default=str), resultType="success")

    def _build_unsupported_tool_result(self, tool_name: str) -> ToolResult:
        return ToolResult(
            textResultForLlm=f"Tool '{tool_name}' is not supported by this client instance.",
            resultType="failure",
            error=f"tool '{tool_name}' not supported",
            toolTelemetry={},
        )
