"""
JSON-RPC 2.0 client for talking to the Copilot CLI server.

Messages are framed with a ``Content-Length`` header, the same framing used by
vscode-jsonrpc. The client works over any asyncio stream pair, so the same
class serves both the stdio pipes of a spawned CLI process and a TCP socket.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[dict], None]
RequestHandler = Callable[[dict], Union[Any, Awaitable[Any]]]

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class JsonRpcError(Exception):
    """Error response received for a JSON-RPC request."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class ConnectionClosedError(Exception):
    """The connection closed before a response arrived."""


class JsonRpcClient:
    """
    Bidirectional JSON-RPC connection.

    Outgoing requests are correlated with responses by id. Incoming
    notifications are dispatched in arrival order; incoming requests are
    answered from the handler registered for their method.

    Example:
        >>> reader, writer = await asyncio.open_connection("localhost", 3000)
        >>> client = JsonRpcClient(reader, writer)
        >>> client.start()
        >>> result = await client.request("ping", {"message": "hi"})
        >>> await client.stop()
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._request_id = 0
        self._pending_requests: dict[int, asyncio.Future] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._request_handlers: dict[str, RequestHandler] = {}
        self._close_handlers: list[Callable[[], None]] = []
        self._error_handlers: list[Callable[[Exception], None]] = []
        self._reader_task: Optional[asyncio.Task] = None
        self._request_tasks: set[asyncio.Task] = set()
        self._writer_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def set_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers[method] = handler

    def set_request_handler(self, method: str, handler: RequestHandler) -> None:
        self._request_handlers[method] = handler

    def on_close(self, handler: Callable[[], None]) -> None:
        """Register a callback invoked once when the remote end closes the stream."""
        self._close_handlers.append(handler)

    def on_error(self, handler: Callable[[Exception], None]) -> None:
        self._error_handlers.append(handler)

    def start(self) -> None:
        """Start reading messages from the stream."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def stop(self) -> None:
        """
        Dispose of the connection.

        Pending requests are rejected with :class:`ConnectionClosedError`.
        Safe to call more than once and on a connection the peer already closed.
        """
        self._closed = True

        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        for task in list(self._request_tasks):
            task.cancel()
        self._request_tasks.clear()

        self._reject_pending(ConnectionClosedError("Connection disposed"))

        if not self._writer.is_closing():
            try:
                self._writer.close()
            except (OSError, RuntimeError) as e:
                logger.debug("Error closing JSON-RPC writer: %s", e)

    async def request(self, method: str, params: Optional[dict] = None) -> Any:
        """
        Send a request and wait for its result.

        Raises:
            JsonRpcError: If the server answers with an error.
            ConnectionClosedError: If the connection closes first.
        """
        if self._closed:
            raise ConnectionClosedError(f"Connection closed; cannot send {method}")

        self._request_id += 1
        req_id = self._request_id

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_requests[req_id] = future

        try:
            await self._write_message(
                {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}}
            )
        except (OSError, RuntimeError) as e:
            self._pending_requests.pop(req_id, None)
            raise ConnectionClosedError(f"Failed to send {method}: {e}") from e

        return await future

    async def notify(self, method: str, params: Optional[dict] = None) -> None:
        """Send a notification (no response expected)."""
        if self._closed:
            raise ConnectionClosedError(f"Connection closed; cannot send {method}")
        try:
            await self._write_message({"jsonrpc": "2.0", "method": method, "params": params or {}})
        except (OSError, RuntimeError) as e:
            raise ConnectionClosedError(f"Failed to send {method}: {e}") from e

    async def _write_message(self, message: dict) -> None:
        content = json.dumps(message).encode("utf-8")
        header = f"Content-Length: {len(content)}\r\n\r\n".encode("ascii")
        async with self._writer_lock:
            self._writer.write(header + content)
            await self._writer.drain()

    async def _read_message(self) -> Optional[dict]:
        """Read one framed message, or return None at end of stream."""
        headers: dict[str, str] = {}
        while True:
            line = await self._reader.readline()
            if not line:
                return None
            decoded = line.decode("ascii", errors="replace").strip()
            if not decoded:
                if headers:
                    break
                continue
            if ":" in decoded:
                key, value = decoded.split(":", 1)
                headers[key.strip().lower()] = value.strip()

        content_length = int(headers.get("content-length", 0))
        content = await self._reader.readexactly(content_length)
        return json.loads(content.decode("utf-8"))

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    message = await self._read_message()
                except (ValueError, UnicodeDecodeError) as e:
                    # A malformed frame; report it and keep reading
                    self._report_error(e)
                    continue
                if message is None:
                    break
                if not isinstance(message, dict):
                    self._report_error(
                        ValueError(f"Ignoring non-object JSON-RPC message: {message!r}")
                    )
                    continue
                self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except (asyncio.IncompleteReadError, ConnectionError, OSError) as e:
            logger.debug("JSON-RPC stream failed: %s", e)
            self._report_error(e)
        except Exception as e:  # pylint: disable=broad-except
            logger.warning("JSON-RPC reader failed", exc_info=True)
            self._report_error(e)
        finally:
            # No-op after stop(); otherwise nothing may stay pending
            self._handle_remote_close()

    def _handle_message(self, message: dict) -> None:
        if "method" not in message:
            self._handle_response(message)
        elif "id" in message:
            task = asyncio.create_task(self._handle_request(message))
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)
        else:
            self._handle_notification(message)

    def _handle_response(self, message: dict) -> None:
        req_id = message.get("id")
        try:
            future = self._pending_requests.pop(req_id, None)
        except TypeError:
            future = None
        if future is None or future.done():
            logger.debug("Dropping response for unknown request id %r", req_id)
            return
        error = message.get("error")
        if error is not None and not isinstance(error, dict):
            future.set_exception(JsonRpcError(INTERNAL_ERROR, str(error)))
        elif error is not None:
            future.set_exception(
                JsonRpcError(
                    error.get("code", INTERNAL_ERROR),
                    error.get("message", "Unknown error"),
                    error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result"))

    def _handle_notification(self, message: dict) -> None:
        method = message["method"]
        handler = self._notification_handlers.get(method)
        if handler is None:
            logger.debug("No handler for notification %s", method)
            return
        try:
            handler(message.get("params") or {})
        except Exception as e:  # pylint: disable=broad-except
            logger.warning("Notification handler for %s failed", method, exc_info=True)
            self._report_error(e)

    async def _handle_request(self, message: dict) -> None:
        method = message["method"]
        req_id = message["id"]
        handler = self._request_handlers.get(method)

        if handler is None:
            response: dict[str, Any] = {
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Unhandled method {method}"},
            }
        else:
            try:
                result = handler(message.get("params") or {})
                if inspect.isawaitable(result):
                    result = await result
                response = {"jsonrpc": "2.0", "id": req_id, "result": result}
            except asyncio.CancelledError:
                raise
            except Exception as e:  # pylint: disable=broad-except
                response = {
                    "jsonrpc": "2.0",
                    "id": req_id,
                    "error": {"code": INTERNAL_ERROR, "message": str(e)},
                }

        if self._closed:
            return
        try:
            await self._write_message(response)
        except (OSError, RuntimeError) as e:
            logger.debug("Failed to answer %s request: %s", method, e)

    def _handle_remote_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._reject_pending(ConnectionClosedError("Connection closed by server"))
        for handler in list(self._close_handlers):
            try:
                handler()
            except Exception:  # pylint: disable=broad-except
                logger.warning("Close handler failed", exc_info=True)

    def _report_error(self, error: Exception) -> None:
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception:  # pylint: disable=broad-except
                logger.warning("Error handler failed", exc_info=True)

    def _reject_pending(self, error: Exception) -> None:
        pending = list(self._pending_requests.values())
        self._pending_requests.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
