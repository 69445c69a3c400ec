"""
Streaming query API.

:func:`query` runs one prompt end to end on a private client and yields the
session's events as they arrive, until the turn goes idle.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Optional

from .client import CopilotClient
from .session import CopilotSession
from .types import (
    CopilotClientOptions,
    MessageOptions,
    QueryOptions,
    SessionConfig,
    SessionEvent,
    StopError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60000


class QueryTimeoutError(TimeoutError):
    """The turn did not complete within the query timeout."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Query timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class SessionError(RuntimeError):
    """The CLI reported a session-level error."""

    def __init__(self, message: str, event: Optional[SessionEvent] = None):
        super().__init__(message)
        self.event = event


class _Abort:
    def __init__(self, error: BaseException):
        self.error = error


class _EventStream:
    """
    Pull-based view of events pushed by a session callback.

    ``abort()`` is the cancellation token: events queued before the abort are
    still delivered, then iteration raises the abort error.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._abort: Optional[_Abort] = None

    @property
    def aborted(self) -> bool:
        return self._abort is not None

    def push(self, event: SessionEvent) -> None:
        if self._abort is None:
            self._queue.put_nowait(event)

    def abort(self, error: BaseException) -> None:
        if self._abort is None:
            self._abort = _Abort(error)
            self._queue.put_nowait(self._abort)

    def __aiter__(self) -> "_EventStream":
        return self

    async def __anext__(self) -> SessionEvent:
        item = await self._queue.get()
        if isinstance(item, _Abort):
            raise item.error
        return item


def _session_error_message(data: Any) -> str:
    if isinstance(data, dict) and "message" in data:
        return str(data["message"])
    return "Unknown error"


def _cleanup_error_event(errors: list[StopError]) -> SessionEvent:
    return SessionEvent(
        id=f"error-{int(time.time() * 1000)}",
        type="error",
        data={"message": "Cleanup errors: " + "; ".join(e["message"] for e in errors)},
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


async def query(options: QueryOptions) -> AsyncIterator[SessionEvent]:
    """
    Query the Copilot CLI and stream events as they occur.

    Starts a private client, creates a session, sends the prompt and yields
    the session's events until ``session.idle``. The session is destroyed and
    the client stopped on every exit path; if stopping reports errors, one
    final event of type ``"error"`` describes them.

    Raises:
        SessionError: The CLI emitted a ``session.error`` event.
        QueryTimeoutError: The turn did not go idle within ``timeout`` ms.

    Example:
        >>> async for event in query({"prompt": "What is 2+2?"}):
        ...     if event.type == "assistant.message":
        ...         print("Answer:", event.data["content"])
    """
    timeout = options.get("timeout", DEFAULT_TIMEOUT_MS)
    include_ephemeral = options.get("include_ephemeral", True)

    client_options: CopilotClientOptions = {"log_level": options.get("log_level", "error")}
    if options.get("cli_path"):
        client_options["cli_path"] = options["cli_path"]
    if options.get("cli_args"):
        client_options["cli_args"] = options["cli_args"]
    if options.get("cwd"):
        client_options["cwd"] = options["cwd"]
    client = CopilotClient(client_options)

    stream = _EventStream()
    timer = asyncio.get_running_loop().call_later(
        timeout / 1000, stream.abort, QueryTimeoutError(timeout)
    )

    session: Optional[CopilotSession] = None
    turn_finished = False
    closed_by_consumer = False

    def on_send_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not turn_finished:
            stream.abort(error)

    try:
        await client.start()

        session_config: SessionConfig = {}
        if options.get("model"):
            session_config["model"] = options["model"]
        if options.get("tools"):
            session_config["tools"] = options["tools"]
        session = await client.create_session(session_config)
        session.on(stream.push)

        message: MessageOptions = {"prompt": options["prompt"]}
        if options.get("attachments"):
            message["attachments"] = options["attachments"]
        send_task = asyncio.create_task(session.send(message))
        send_task.add_done_callback(on_send_done)

        async for event in stream:
            if event.ephemeral and not include_ephemeral:
                # A filtered-out idle still ends the turn
                if event.type == "session.idle":
                    break
                continue

            if event.type == "session.error":
                raise SessionError(_session_error_message(event.data), event)

            yield event

            if event.type == "session.idle":
                break
    except (GeneratorExit, asyncio.CancelledError):
        closed_by_consumer = True
        raise
    finally:
        turn_finished = True
        timer.cancel()

        if session is not None:
            try:
                await session.destroy()
            except Exception:  # pylint: disable=broad-except
                # Still registered, so client.stop() retries and reports it
                logger.debug("Destroying session %s failed", session.session_id, exc_info=True)

        cleanup_errors = await client.stop()
        if cleanup_errors and not closed_by_consumer:
            yield _cleanup_error_event(cleanup_errors)
