"""
Connection manager for the Copilot CLI server.

:class:`CopilotClient` owns the server process and the JSON-RPC channel to
it. Every session created through a client shares that one channel; events
and tool calls are routed to the right session by ID.

Example:
    >>> from copilot_runtime import CopilotClient
    >>>
    >>> async with CopilotClient({"log_level": "warning"}) as client:
    ...     session = await client.create_session({"model": "gpt-5"})
    ...     session.on(print)
    ...     await session.send({"prompt": "List the files here"})
"""

import asyncio
import logging
import os
import re
from typing import Any, Optional

from .jsonrpc import JsonRpcClient
from .process import CliServerProcess
from .session import CopilotSession, SessionRegistry
from .tools import ToolCallDispatcher
from .types import (
    ConnectionState,
    CopilotClientOptions,
    SessionConfig,
    SessionEvent,
    StopError,
    Tool,
)

logger = logging.getLogger(__name__)

# Seconds to wait for the TCP connection to the CLI server
TCP_CONNECTION_TIMEOUT = 10.0

# Restarts in a row before the client gives up on a crashing server
MAX_RECONNECT_ATTEMPTS = 3

# Seconds a connection must stay up before the restart count resets
RECONNECT_RESET_INTERVAL = 10.0

_URL_SCHEME = re.compile(r"^https?://")


def _parse_cli_url(url: str) -> tuple[str, int]:
    """
    Split ``cli_url`` into host and port.

    Accepts "port", "host:port" and either form behind an http(s) scheme.
    A missing host means localhost.
    """
    address = _URL_SCHEME.sub("", url)

    if address.isdigit():
        host, port_text = "", address
    elif address.count(":") == 1:
        host, _, port_text = address.partition(":")
    else:
        raise ValueError(f"Invalid cli_url format: {url}")

    try:
        port = int(port_text)
    except ValueError as e:
        raise ValueError(f"Invalid port in cli_url: {url}") from e
    if not 0 < port <= 65535:
        raise ValueError(f"Invalid port in cli_url: {url}")

    return (host or "localhost", port)


class CopilotClient:
    """
    Runs (or attaches to) a Copilot CLI server and multiplexes sessions over it.

    By default the client spawns ``copilot --server --stdio`` and talks to it
    over the child's pipes. With ``use_stdio=False`` the server listens on a
    TCP port instead, and with ``cli_url`` the client attaches to a server
    somebody else started and never manages its process.

    While connected, a dropped channel or an exited server triggers a
    background restart when ``auto_restart`` is on. Sessions do not survive
    the restart.

    Attributes:
        options: The resolved client options, defaults filled in.
    """

    def __init__(self, options: Optional[CopilotClientOptions] = None):
        """
        Args:
            options: Client options. Anything left out falls back to its
                default; ``cli_path`` defaults to ``$COPILOT_CLI_PATH`` or
                "copilot".

        Raises:
            ValueError: ``cli_url`` was combined with ``cli_path`` or
                ``use_stdio``, or is not a valid address.
        """
        opts = options or {}
        cli_url = opts.get("cli_url")

        if cli_url and (opts.get("use_stdio") or opts.get("cli_path")):
            raise ValueError("cli_url is mutually exclusive with use_stdio and cli_path")

        self._is_external_server: bool = bool(cli_url)
        self._actual_host: str = "localhost"
        self._actual_port: Optional[int] = None
        if cli_url:
            self._actual_host, self._actual_port = _parse_cli_url(cli_url)

        self.options: CopilotClientOptions = {
            "cli_path": opts.get("cli_path") or os.environ.get("COPILOT_CLI_PATH", "copilot"),
            "cli_args": list(opts.get("cli_args", [])),
            "cwd": opts.get("cwd") or os.getcwd(),
            "port": opts.get("port", 0),
            # An external server is always reached over TCP
            "use_stdio": not cli_url and opts.get("use_stdio", True),
            "log_level": opts.get("log_level", "info"),
            "auto_start": opts.get("auto_start", True),
            "auto_restart": opts.get("auto_restart", True),
        }
        if cli_url:
            self.options["cli_url"] = cli_url
        if opts.get("env"):
            self.options["env"] = opts["env"]

        self._process: Optional[CliServerProcess] = None
        self._client: Optional[JsonRpcClient] = None
        self._socket_writer: Optional[asyncio.StreamWriter] = None
        self._state: ConnectionState = "disconnected"
        self._sessions = SessionRegistry()
        self._tool_dispatcher = ToolCallDispatcher(self._sessions)
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._connected_at: Optional[float] = None

    async def __aenter__(self) -> "CopilotClient":
        await self.start()
        return self

    async def __aexit__(self, *_args: object) -> None:
        errors = await self.stop()
        for error in errors:
            logger.warning("Cleanup error: %s", error["message"])

    async def start(self) -> None:
        """
        Spawn the server (unless attached via ``cli_url``) and open the channel.

        Does nothing when already connected. On failure the state becomes
        "error" and the exception propagates.

        Raises:
            RuntimeError: Spawning, readiness or connecting failed.
        """
        if self._state == "connected":
            return

        self._state = "connecting"
        try:
            if not self._is_external_server:
                await self._start_cli_server()
            await self._connect_to_server()
        except Exception:
            self._state = "error"
            raise

        self._state = "connected"
        self._connected_at = asyncio.get_running_loop().time()
        if asyncio.current_task() is not self._reconnect_task:
            self._reconnect_attempts = 0
        logger.info("Connected to CLI server")

    async def stop(self) -> list[StopError]:
        """
        Shut down gracefully and report what went wrong instead of raising.

        Destroys every open session (three attempts each, with backoff),
        closes the channel and socket, then terminates the server process if
        this client spawned it. A failing step does not stop the later ones.

        Returns:
            One ``{"message": ...}`` entry per failure; empty on a clean stop.
        """
        self._cancel_reconnect()

        errors: list[StopError] = await self._sessions.destroy_all()

        if self._client:
            try:
                await self._client.stop()
            except Exception as e:  # pylint: disable=broad-except
                errors.append({"message": f"Failed to dispose connection: {e}"})
            self._client = None

        if self._socket_writer:
            try:
                if not self._socket_writer.is_closing():
                    self._socket_writer.close()
            except Exception as e:  # pylint: disable=broad-except
                errors.append({"message": f"Failed to close socket: {e}"})
            self._socket_writer = None

        if self._process:
            try:
                await self._process.terminate()
            except Exception as e:  # pylint: disable=broad-except
                errors.append({"message": f"Failed to kill CLI process: {e}"})
            self._process = None

        self._reset_disconnected()
        return errors

    async def force_stop(self) -> None:
        """
        Tear everything down immediately.

        Sessions are forgotten without a destroy call, the channel and socket
        are aborted and a spawned server is killed. Meant for when
        :meth:`stop` hangs or has already failed.
        """
        self._cancel_reconnect()
        self._sessions.clear()

        if self._client:
            try:
                await self._client.stop()
            except Exception:  # pylint: disable=broad-except
                logger.debug("Ignoring error closing connection during force stop", exc_info=True)
            self._client = None

        if self._socket_writer:
            try:
                self._socket_writer.transport.abort()
            except Exception:  # pylint: disable=broad-except
                logger.debug("Ignoring error closing socket during force stop", exc_info=True)
            self._socket_writer = None

        if self._process:
            self._process.kill()
            self._process = None

        self._reset_disconnected()

    async def create_session(self, config: Optional[SessionConfig] = None) -> CopilotSession:
        """
        Open a new session on the shared channel.

        Connects first when needed and ``auto_start`` allows it. The server
        only sees each tool's name, description and parameter schema; the
        handlers run in this process when the server calls back.

        Args:
            config: Optional ``model``, ``session_id`` and ``tools``.

        Raises:
            RuntimeError: Not connected and ``auto_start`` is off, or the
                server returned no session ID.
        """
        if not self._client:
            if not self.options["auto_start"]:
                raise RuntimeError("Client not connected. Call start() first.")
            await self.start()
        if not self._client:
            raise RuntimeError("Client not connected")

        cfg = config or {}
        tools = cfg.get("tools") or []

        payload: dict[str, Any] = {}
        if cfg.get("model"):
            payload["model"] = cfg["model"]
        if cfg.get("session_id"):
            payload["sessionId"] = cfg["session_id"]
        if tools:
            payload["tools"] = [self._tool_manifest_entry(tool) for tool in tools]

        response = await self._client.request("session.create", payload)

        session_id = (response or {}).get("sessionId") or cfg.get("session_id")
        if not session_id:
            raise RuntimeError("CLI server did not return a session ID")

        session = CopilotSession(session_id, self._client, on_destroyed=self._sessions.remove)
        session._register_tools(tools)
        self._sessions.add(session)
        logger.debug("Created session %s", session_id)

        return session

    def get_state(self) -> ConnectionState:
        """Current lifecycle state: disconnected, connecting, connected or error."""
        return self._state

    async def ping(self, message: Optional[str] = None) -> dict:
        """
        Round-trip a message through the server.

        Returns:
            The server's reply, with ``message`` and ``timestamp`` keys.

        Raises:
            RuntimeError: The client is not connected.
        """
        if not self._client:
            raise RuntimeError("Client not connected")

        return await self._client.request("ping", {"message": message})

    @staticmethod
    def _tool_manifest_entry(tool: Tool) -> dict[str, Any]:
        entry: dict[str, Any] = {"name": tool.name, "description": tool.description}
        if tool.parameters:
            entry["parameters"] = tool.parameters
        return entry

    def _reset_disconnected(self) -> None:
        self._state = "disconnected"
        if not self._is_external_server:
            self._actual_port = None

    async def _start_cli_server(self) -> None:
        """
        Start the CLI server process.

        Raises:
            RuntimeError: If the server fails to start or times out.
        """
        if self._process:
            # Left over from a failed start
            self._process.kill()
        self._process = CliServerProcess(
            self.options,
            on_exit=lambda code: self._handle_unexpected_disconnect(
                f"CLI server exited with code {code}"
            ),
        )
        port = await self._process.start()
        if port is not None:
            self._actual_port = port

    async def _connect_to_server(self) -> None:
        """
        Connect to the CLI server via the configured transport.

        Raises:
            RuntimeError: If the connection fails.
        """
        if self.options["use_stdio"]:
            await self._connect_via_stdio()
        else:
            await self._connect_via_tcp()

    async def _connect_via_stdio(self) -> None:
        """
        Connect to the CLI server via stdio pipes.

        Raises:
            RuntimeError: If the CLI process is not started.
        """
        if not self._process or not self._process.stdin or not self._process.stdout:
            raise RuntimeError("CLI process not started")

        self._client = JsonRpcClient(self._process.stdout, self._process.stdin)
        self._attach_connection_handlers()
        self._client.start()

    async def _connect_via_tcp(self) -> None:
        """
        Connect to the CLI server via TCP socket.

        Raises:
            RuntimeError: If the server port is not available or connection fails.
        """
        if not self._actual_port:
            raise RuntimeError("Server port not available")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._actual_host, self._actual_port),
                timeout=TCP_CONNECTION_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise RuntimeError(
                f"Failed to connect to CLI server at {self._actual_host}:{self._actual_port}: {e}"
            ) from e

        self._socket_writer = writer
        self._client = JsonRpcClient(reader, writer)
        self._attach_connection_handlers()
        self._client.start()

    def _attach_connection_handlers(self) -> None:
        if not self._client:
            return

        self._client.set_notification_handler(
            "session.event", self._handle_session_event_notification
        )
        self._client.set_request_handler("tool.call", self._tool_dispatcher.handle)
        self._client.on_close(
            lambda: self._handle_unexpected_disconnect("connection closed by CLI server")
        )
        # Errors that matter surface as a close; the rest are only logged
        self._client.on_error(lambda error: logger.debug("JSON-RPC connection error: %s", error))

    def _handle_session_event_notification(self, params: dict) -> None:
        session_id = params.get("sessionId")
        event = params.get("event")
        if not isinstance(session_id, str) or not isinstance(event, dict):
            logger.debug("Ignoring malformed session.event notification")
            return

        session = self._sessions.get(session_id)
        if session:
            session._dispatch_event(SessionEvent.from_dict(event))
        else:
            logger.debug("Dropping event for unknown session %s", session_id)

    def _handle_unexpected_disconnect(self, reason: str) -> None:
        if self._state != "connected" or not self.options["auto_restart"]:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return

        now = asyncio.get_running_loop().time()
        if self._connected_at is None or now - self._connected_at >= RECONNECT_RESET_INTERVAL:
            self._reconnect_attempts = 0

        self._state = "disconnected"
        if self._reconnect_attempts >= MAX_RECONNECT_ATTEMPTS:
            logger.error(
                "Lost connection to CLI server (%s); giving up after %d restarts",
                reason,
                self._reconnect_attempts,
            )
            self._reconnect_task = asyncio.create_task(self._give_up())
            return

        self._reconnect_attempts += 1
        logger.warning("Lost connection to CLI server (%s); reconnecting", reason)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        """Attempt to restart the server and reconnect; failures are logged only."""
        self._state = "disconnected"
        try:
            await self.stop()
            await self.start()
        except Exception:  # pylint: disable=broad-except
            logger.warning("Failed to reconnect to CLI server", exc_info=True)
            # Release whatever the failed attempt left running
            await self.stop()

    async def _give_up(self) -> None:
        """Release the dead server and connection; the client stays disconnected."""
        for error in await self.stop():
            logger.debug("Cleanup error after giving up: %s", error["message"])

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if task is not asyncio.current_task():
            self._reconnect_task = None
