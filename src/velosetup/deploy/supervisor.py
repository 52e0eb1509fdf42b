"""
Process supervisor - runs the server frontend and watches it.

Handles:
- Checking configured ports are free before spawning
- Spawning the frontend process
- Capturing logs and detecting exit in the background
"""

import asyncio
import errno
import logging
import socket
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from velosetup.deploy.commands import BinaryCommands
from velosetup.deploy.config import load_config
from velosetup.errors import NotFoundError, PortConflictError

logger = logging.getLogger(__name__)


class ProcessStatus(str, Enum):
    """State of the supervised server process."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


@dataclass
class ServerProcessHandle:
    """A supervised server process."""
    config_path: Path
    pid: Optional[int] = None
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    status: ProcessStatus = ProcessStatus.STOPPED
    exit_code: Optional[int] = None
    error_message: Optional[str] = None

    # Process handle and monitor (not serialized)
    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _monitor: Optional[asyncio.Task] = field(default=None, repr=False)
    _exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _stopping: bool = field(default=False, repr=False)
    _log_buffer: list[str] = field(default_factory=list, repr=False)

    @property
    def recent_logs(self) -> list[str]:
        return self._log_buffer[-50:]

    @property
    def is_running(self) -> bool:
        return self.status in (ProcessStatus.STARTING, ProcessStatus.RUNNING)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "configPath": str(self.config_path),
            "status": self.status.value,
            "startedAt": int(self.started_at * 1000) if self.started_at else None,
            "stoppedAt": int(self.stopped_at * 1000) if self.stopped_at else None,
            "exitCode": self.exit_code,
            "errorMessage": self.error_message,
            "recentLogs": self.recent_logs,
        }

    def add_log(self, line: str):
        """Add a log line to the buffer."""
        self._log_buffer.append(line)
        if len(self._log_buffer) > 1000:
            self._log_buffer = self._log_buffer[-500:]


ExitCallback = Callable[[ServerProcessHandle], None]


def check_port_free(address: str, port: int):
    """
    Test-bind a port.

    Raises:
        PortConflictError: If something already listens there.
    """
    family = socket.AF_INET6 if ":" in address else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if sys.platform != "win32":
            # Ignore TIME_WAIT leftovers; a live listener still conflicts
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((address, port))
    except OSError as e:
        if e.errno in (errno.EADDRINUSE, errno.EACCES):
            raise PortConflictError(f"Port {port} on {address} is already in use", port=port) from e
        raise
    finally:
        sock.close()


class ProcessSupervisor:
    """
    Starts, tracks and stops the server frontend process.
    """

    def __init__(self, commands: BinaryCommands):
        self._commands = commands
        self._on_exit: list[ExitCallback] = []

    def on_exit(self, callback: ExitCallback):
        """Register a callback invoked when a supervised process exits."""
        self._on_exit.append(callback)

    async def start(self, config_path: Path) -> ServerProcessHandle:
        """
        Start the server with the given config.

        Returns:
            A handle in RUNNING state. Exit is detected in the background.

        Raises:
            PortConflictError: A configured port is already bound.
            NotFoundError: The binary cannot be executed.
            ConfigError: The config file is unreadable.
        """
        config = load_config(config_path)
        for address, port in config.ports:
            check_port_free(address, port)

        handle = ServerProcessHandle(config_path=config_path, status=ProcessStatus.STARTING)
        cmd = self._commands.frontend_args(config_path)

        logger.info(f"Starting: {' '.join(cmd)}")
        handle.add_log(f"$ {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            handle.status = ProcessStatus.STOPPED
            handle.error_message = str(e)
            raise NotFoundError(f"Cannot execute {cmd[0]}: {e}") from e

        handle._process = process
        handle.pid = process.pid
        handle.started_at = time.time()
        handle.status = ProcessStatus.RUNNING

        readers = [
            asyncio.create_task(self._read_output(handle, process.stdout, "stdout")),
            asyncio.create_task(self._read_output(handle, process.stderr, "stderr")),
        ]
        handle._monitor = asyncio.create_task(self._monitor_process(handle, process, readers))

        logger.info(f"Started with PID {process.pid}")
        return handle

    async def stop(self, handle: ServerProcessHandle, timeout: float = 5.0) -> bool:
        """
        Stop a running server.

        Returns True if the process is no longer running.
        """
        process = handle._process
        if process is None:
            return True
        if not handle.is_running:
            return True  # Already exited

        handle._stopping = True
        try:
            # Try graceful shutdown first
            process.terminate()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(handle._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{handle.pid}] Force killing after timeout")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await handle._exited.wait()

        logger.info(f"[{handle.pid}] Stopped with exit code {handle.exit_code}")
        return True

    def status(self, handle: ServerProcessHandle) -> ProcessStatus:
        return handle.status

    async def wait_exit(self, handle: ServerProcessHandle) -> ProcessStatus:
        """Block until the process exits; returns its final status."""
        await handle._exited.wait()
        return handle.status

    async def _read_output(
        self,
        handle: ServerProcessHandle,
        stream: asyncio.StreamReader,
        stream_name: str,
    ):
        """Read output from a process stream."""
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                handle.add_log(f"[{stream_name}] {text}")
        except (asyncio.CancelledError, ConnectionError, ValueError) as e:
            logger.debug(f"[{handle.pid}] Stream read ended: {e!r}")

    async def _monitor_process(
        self,
        handle: ServerProcessHandle,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task],
    ):
        """Monitor a process and update state when it exits."""
        await process.wait()
        await asyncio.gather(*readers, return_exceptions=True)

        handle.exit_code = process.returncode
        handle.stopped_at = time.time()

        if handle._stopping:
            handle.status = ProcessStatus.STOPPED
        else:
            # The server never exits on its own; any unrequested exit is a crash
            handle.status = ProcessStatus.CRASHED
            handle.error_message = f"Process exited with code {handle.exit_code}"
            logger.error(f"[{handle.pid}] Server exited unexpectedly with code {handle.exit_code}")

        handle._exited.set()
        logger.info(f"[{handle.pid}] Exited with code {handle.exit_code}")

        for callback in self._on_exit:
            try:
                callback(handle)
            except Exception:
                logger.exception(f"[{handle.pid}] Exit callback failed")
