"""
Supervision of the Copilot CLI server process.
"""

import asyncio
import logging
import os
import re
import sys
from typing import Callable, Optional

from .types import CopilotClientOptions

logger = logging.getLogger(__name__)

# Seconds to wait for a TCP-mode server to announce its port
STARTUP_TIMEOUT = 10.0

_PORT_ANNOUNCEMENT = re.compile(r"listening on port (\d+)", re.IGNORECASE)

ExitHandler = Callable[[Optional[int]], None]


class CliServerProcess:
    """
    A spawned Copilot CLI server.

    Builds the command line for the configured transport, spawns the process,
    waits until it is ready to accept connections and reports unexpected
    exits to ``on_exit``.

    Example:
        >>> process = CliServerProcess(client.options, on_exit=print)
        >>> port = await process.start()  # None in stdio mode
        >>> await process.terminate()
    """

    def __init__(self, options: CopilotClientOptions, on_exit: Optional[ExitHandler] = None):
        self.options = options
        self.port: Optional[int] = None
        self._on_exit = on_exit
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: list[asyncio.Task] = []
        self._stopping = False
        self._reaper: Optional[asyncio.Task] = None

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self._process.stdin if self._process else None

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self._process.stdout if self._process else None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    def build_args(self) -> list[str]:
        """Build the full command line, runtime-managed flags last."""
        cli_path = self.options["cli_path"]
        args = [
            *self.options.get("cli_args", []),
            "--server",
            "--log-level",
            self.options["log_level"],
        ]

        if self.options["use_stdio"]:
            args.append("--stdio")
        elif self.options["port"] > 0:
            args.extend(["--port", str(self.options["port"])])

        # Scripts are run through their interpreter; shebangs don't work on Windows
        if cli_path.endswith(".js"):
            return ["node", cli_path] + args
        if cli_path.endswith(".py"):
            return [sys.executable, cli_path] + args
        return [cli_path] + args

    async def start(self) -> Optional[int]:
        """
        Spawn the CLI server and wait until it is ready.

        In stdio mode the server is ready as soon as it is spawned. In TCP mode
        this waits for the "listening on port N" announcement on stdout.

        Returns:
            The port announced by the server in TCP mode, otherwise None.

        Raises:
            RuntimeError: If the process cannot be spawned, exits before it is
                ready, or does not become ready within ``STARTUP_TIMEOUT``.
        """
        args = self.build_args()
        use_stdio = self.options["use_stdio"]

        env = self.options.get("env")
        if use_stdio:
            # Debug output on stdout would corrupt the RPC stream
            env = {**(env if env is not None else os.environ), "NODE_DEBUG": ""}

        logger.info("Starting CLI server: %s", " ".join(args))
        self._stopping = False
        self.port = None
        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if use_stdio else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.options["cwd"],
                env=env,
            )
        except OSError as e:
            self._process = None
            raise RuntimeError(f"Failed to start CLI server: {e}") from e

        self._drain(self._process.stderr, "stderr")

        if not use_stdio:
            try:
                self.port = await asyncio.wait_for(self._read_port(), timeout=STARTUP_TIMEOUT)
            except asyncio.TimeoutError:
                self.kill()
                raise RuntimeError("Timeout waiting for CLI server to start") from None
            except RuntimeError:
                self.kill()
                raise
            self._drain(self._process.stdout, "stdout")

        self._tasks.append(asyncio.create_task(self._monitor(self._process)))
        logger.debug("CLI server started (pid %s)", self._process.pid)
        return self.port

    async def terminate(self, timeout: float = 5.0) -> None:
        """Terminate the process, killing it if it does not exit within ``timeout`` seconds."""
        process = self._process
        if process is None:
            return

        self._stopping = True
        self._process = None
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        self._cancel_tasks()

    def kill(self) -> None:
        """Kill the process immediately and reap it in the background. Never raises."""
        process = self._process
        self._stopping = True
        self._process = None
        self._cancel_tasks()
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            self._reaper = asyncio.ensure_future(process.wait())

    async def _read_port(self) -> int:
        process = self._process
        if not process or not process.stdout:
            raise RuntimeError("Process not started or stdout not available")

        while True:
            line = await process.stdout.readline()
            if not line:
                returncode = await process.wait()
                raise RuntimeError(f"CLI server exited with code {returncode}")

            text = line.decode(errors="replace")
            logger.debug("CLI stdout: %s", text.rstrip())
            match = _PORT_ANNOUNCEMENT.search(text)
            if match:
                return int(match.group(1))

    async def _monitor(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._stopping or process is not self._process:
            return
        logger.warning("CLI server exited unexpectedly with code %s", returncode)
        if self._on_exit:
            self._on_exit(returncode)

    def _drain(self, stream: Optional[asyncio.StreamReader], name: str) -> None:
        if stream is None:
            return

        async def drain() -> None:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    return
                logger.debug("CLI %s: %s", name, chunk.decode(errors="replace").rstrip())

        self._tasks.append(asyncio.create_task(drain()))

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []
