"""
Server binary command convention.

All one-shot invocations of the Velociraptor binary go through here:
config generation, user creation and client config export. The long-running
``frontend`` command is built here but spawned by the supervisor.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from velosetup.errors import CommandError, NotFoundError, TimedOutError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0


@dataclass
class CommandResult:
    """Captured output of a completed command."""
    args: list[str]
    returncode: int
    stdout: str
    stderr: str


class BinaryCommands:
    """Runs the server binary with a fixed argument convention."""

    def __init__(self, binary_path: Path, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.binary_path = Path(binary_path)
        self.timeout = timeout

    def generate_config_args(self) -> list[str]:
        return [str(self.binary_path), "config", "generate"]

    def add_user_args(self, config_path: Path, username: str, secret: str) -> list[str]:
        return [
            str(self.binary_path), "--config", str(config_path),
            "user", "add", username, secret, "--role", "administrator",
        ]

    def client_config_args(self, config_path: Path) -> list[str]:
        return [str(self.binary_path), "--config", str(config_path), "config", "client"]

    def frontend_args(self, config_path: Path) -> list[str]:
        return [str(self.binary_path), "--config", str(config_path), "frontend", "-v"]

    async def generate_config(self) -> str:
        """Run ``config generate`` and return the YAML it prints."""
        result = await self.run(self.generate_config_args())
        return result.stdout

    async def add_user(self, config_path: Path, username: str, secret: str) -> CommandResult:
        return await self.run(
            self.add_user_args(config_path, username, secret),
            redact=(secret,),
        )

    async def client_config(self, config_path: Path) -> str:
        result = await self.run(self.client_config_args(config_path))
        return result.stdout

    async def version(self) -> Optional[str]:
        """Best-effort version string; None if the binary will not say."""
        try:
            result = await self.run([str(self.binary_path), "version"])
        except (CommandError, TimedOutError) as e:
            logger.debug(f"Failed to get version for {self.binary_path}: {e}")
            return None
        output = result.stdout.strip() or result.stderr.strip()
        return output.splitlines()[0] if output else None

    async def run(self, args: list[str], redact: Sequence[str] = ()) -> CommandResult:
        """
        Run a command to completion.

        Raises:
            NotFoundError: The binary cannot be executed.
            TimedOutError: The command did not finish within the timeout.
            CommandError: The command exited non-zero; stderr is attached.
        """
        shown = " ".join("********" if a in redact else a for a in args)
        logger.info(f"$ {shown}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise NotFoundError(f"Cannot execute {args[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise TimedOutError(f"Command timed out after {self.timeout}s: {shown}") from e

        result = CommandResult(
            args=args,
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if result.returncode != 0:
            stderr_text = result.stderr.strip()
            for value in redact:
                stderr_text = stderr_text.replace(value, "********")
            raise CommandError(
                f"Command exited with code {result.returncode}: {shown}",
                returncode=result.returncode,
                stderr=stderr_text,
            )
        return result
