"""SSH command execution and readiness polling for the OpenBSD VM."""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .constants import SSH_READY_CONNECT_TIMEOUT, SSH_READY_INTERVAL, SSH_READY_MAX_ATTEMPTS
from .process import CommandResult, CommandRunner, run_command

logger = logging.getLogger(__name__)


class SSHClient:
    """Runs commands on, and copies files from, one SSH destination.

    The destination is either a host alias from the user's SSH configuration or a
    `user@address` pair combined with explicit options.
    """

    def __init__(
        self,
        destination: str,
        options: Sequence[str] = (),
        runner: CommandRunner = run_command,
    ):
        self.destination = destination
        self.options = list(options)
        self.runner = runner

    @classmethod
    def for_address(
        cls,
        user: str,
        address: str,
        port: int,
        connect_timeout: int = SSH_READY_CONNECT_TIMEOUT,
        runner: CommandRunner = run_command,
        identity_file: Path | None = None,
    ) -> "SSHClient":
        """Client for a freshly booted VM that has no known host key yet."""
        options = []
        if identity_file is not None:
            options.extend(["-i", str(identity_file)])
        options.extend(
            [
                "-o",
                f"ConnectTimeout={connect_timeout}",
                "-o",
                "BatchMode=yes",
                "-o",
                "StrictHostKeyChecking=no",
                "-o",
                "UserKnownHostsFile=/dev/null",
                "-o",
                "LogLevel=ERROR",
                "-p",
                str(port),
            ]
        )
        return cls(f"{user}@{address}", options, runner)

    def _ssh_command(self, command: str) -> list[str]:
        return ["ssh", *self.options, self.destination, command]

    async def run(self, command: str, *, capture: bool = True) -> CommandResult:
        """Execute a remote shell command.

        Args:
            command: Shell command line run by the remote login shell
            capture: Capture output; when False it streams to the terminal

        Returns:
            CommandResult of the ssh process, which carries the remote exit status
        """
        return await self.runner(self._ssh_command(command), capture=capture)

    async def probe(self) -> bool:
        """Check that an authenticated session can run a trivial command."""
        result = await self.run("true")
        return result.ok

    async def path_is_file(self, remote_path: str) -> bool:
        result = await self.run(f"test -f {shlex.quote(remote_path)}")
        return result.ok

    async def copy_from(self, remote_path: str, local_path: Path) -> CommandResult:
        """Copy a single remote file to a local path with scp."""
        scp_options = [("-P" if opt == "-p" else opt) for opt in self.options]
        return await self.runner(
            ["scp", "-q", *scp_options, f"{self.destination}:{remote_path}", str(local_path)],
            capture=True,
        )


class ReadinessOutcome(Enum):
    """Outcome of readiness polling."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class ReadinessResult:
    outcome: ReadinessOutcome
    attempts: int

    @property
    def ready(self) -> bool:
        return self.outcome is ReadinessOutcome.READY


async def wait_for_ssh_ready(
    probe: Callable[[], Awaitable[bool]],
    max_attempts: int = SSH_READY_MAX_ATTEMPTS,
    interval: float = SSH_READY_INTERVAL,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    should_stop: Callable[[], bool] = lambda: False,
) -> ReadinessResult:
    """Poll until the probe succeeds or the attempts run out.

    The probe runs at most `max_attempts` times, `interval` seconds apart. There is
    no sleep after the last failed attempt. `should_stop` is checked before every
    attempt; once it returns True polling ends with INTERRUPTED.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while attempt < max_attempts:
        if should_stop():
            logger.debug(f"SSH polling stopped after {attempt} attempt(s)")
            return ReadinessResult(ReadinessOutcome.INTERRUPTED, attempt)
        attempt += 1
        if await probe():
            logger.debug(f"SSH ready after {attempt} attempt(s)")
            return ReadinessResult(ReadinessOutcome.READY, attempt)
        if attempt < max_attempts:
            await sleep(interval)

    if should_stop():
        return ReadinessResult(ReadinessOutcome.INTERRUPTED, attempt)
    logger.debug(f"SSH not ready after {attempt} attempts")
    return ReadinessResult(ReadinessOutcome.TIMED_OUT, attempt)
