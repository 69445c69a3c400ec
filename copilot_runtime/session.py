"""
Copilot Session - represents a single conversation session with the CLI.

Sessions share the client's JSON-RPC connection; they never own one.
"""

import asyncio
import logging
from typing import Any, Callable, Iterator, Optional

from .types import (
    MessageOptions,
    SessionEvent,
    SessionEventHandler,
    StopError,
    Tool,
    ToolHandler,
)

logger = logging.getLogger(__name__)


class CopilotSession:
    """
    A conversation session with the Copilot CLI.

    Attributes:
        session_id: The unique identifier for this session.

    Example:
        >>> session = await client.create_session({"model": "gpt-5"})
        >>> unsubscribe = session.on(lambda event: print(event.type))
        >>> await session.send({"prompt": "Hello!"})
        >>> unsubscribe()
        >>> await session.destroy()
    """

    def __init__(
        self,
        session_id: str,
        client: Any,
        on_destroyed: Optional[Callable[["CopilotSession"], None]] = None,
    ):
        self.session_id = session_id
        self._client = client
        self._on_destroyed = on_destroyed
        self._event_handlers: set[SessionEventHandler] = set()
        self._tool_handlers: dict[str, ToolHandler] = {}
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    async def send(self, options: MessageOptions) -> str:
        """
        Send a message to this session.

        Args:
            options: The prompt plus optional attachments and delivery mode.

        Returns:
            The ID of the message, assigned by the server.
        """
        payload: dict[str, Any] = {
            "sessionId": self.session_id,
            "prompt": options["prompt"],
        }
        if options.get("attachments"):
            payload["attachments"] = options["attachments"]
        if options.get("mode"):
            payload["mode"] = options["mode"]

        response = await self._client.request("session.send", payload)
        return response["messageId"]

    def on(self, handler: SessionEventHandler) -> Callable[[], None]:
        """
        Subscribe to events from this session.

        Returns:
            A function that removes this handler again.
        """
        self._event_handlers.add(handler)

        def unsubscribe() -> None:
            self._event_handlers.discard(handler)

        return unsubscribe

    def _dispatch_event(self, event: SessionEvent) -> None:
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception:  # pylint: disable=broad-except
                logger.warning(
                    "Event handler failed for %s on session %s",
                    event.type,
                    self.session_id,
                    exc_info=True,
                )

    def _register_tools(self, tools: Optional[list[Tool]]) -> None:
        self._tool_handlers.clear()
        if not tools:
            return
        for tool in tools:
            self._tool_handlers[tool.name] = tool.handler

    def _get_tool_handler(self, name: str) -> Optional[ToolHandler]:
        return self._tool_handlers.get(name)

    async def get_messages(self) -> list[SessionEvent]:
        """Get every event recorded for this session."""
        response = await self._client.request(
            "session.getMessages", {"sessionId": self.session_id}
        )
        return [SessionEvent.from_dict(event) for event in response.get("events", [])]

    async def destroy(self) -> None:
        """
        Destroy this session and free its resources.

        Calling this again after a successful destroy does nothing.
        """
        if self._destroyed:
            return

        await self._client.request("session.destroy", {"sessionId": self.session_id})
        self._destroyed = True
        self._event_handlers.clear()
        self._tool_handlers.clear()
        if self._on_destroyed:
            self._on_destroyed(self)


class SessionRegistry:
    """Live sessions of one client, keyed by session ID."""

    def __init__(self) -> None:
        self._sessions: dict[str, CopilotSession] = {}

    def add(self, session: CopilotSession) -> None:
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[CopilotSession]:
        return self._sessions.get(session_id)

    def remove(self, session: CopilotSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]

    def take_all(self) -> list[CopilotSession]:
        """Remove and return every registered session."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        return sessions

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[CopilotSession]:
        return iter(list(self._sessions.values()))

    async def destroy_all(self, attempts: int = 3, base_delay: float = 0.1) -> list[StopError]:
        """
        Destroy every session, retrying each with exponential backoff.

        The registry is empty afterwards whatever the outcome. A session that
        fails every attempt contributes one error; it does not stop the others
        from being destroyed.

        Args:
            attempts: Destroy attempts per session.
            base_delay: Delay in seconds after the first failed attempt;
                doubled after each further failure.

        Returns:
            One error per session that could not be destroyed.
        """
        errors: list[StopError] = []

        for session in self.take_all():
            last_error: Optional[Exception] = None
            for attempt in range(1, attempts + 1):
                try:
                    await session.destroy()
                    last_error = None
                    break
                except Exception as e:  # pylint: disable=broad-except
                    last_error = e
                    if attempt < attempts:
                        await asyncio.sleep(base_delay * 2 ** (attempt - 1))

            if last_error is not None:
                errors.append(
                    {
                        "message": f"Failed to destroy session {session.session_id} "
                        f"after {attempts} attempts: {last_error}"
                    }
                )

        return errors
