"""Subprocess execution shared by the VM lifecycle and the remote build."""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .exceptions import ExternalCommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Exit status and captured output of a finished command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[..., Awaitable[CommandResult]]


async def run_command(
    args: Sequence[str],
    *,
    capture: bool = True,
    cwd: Path | None = None,
) -> CommandResult:
    """Run a command to completion.

    Args:
        args: Program and arguments
        capture: Capture stdout/stderr; when False the child inherits the terminal
        cwd: Working directory for the child

    Returns:
        CommandResult with the exit status, and output if captured
    """
    argv = [str(a) for a in args]
    logger.debug(f"Running: {shlex.join(argv)}")

    kwargs: dict = {}
    if cwd is not None:
        kwargs["cwd"] = cwd
    if capture:
        kwargs.update(
            {
                "stdout": asyncio.subprocess.PIPE,
                "stderr": asyncio.subprocess.PIPE,
            }
        )

    process = await asyncio.create_subprocess_exec(*argv, **kwargs)
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    result = CommandResult(
        args=argv,
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )
    logger.debug(f"Exit status {result.returncode}: {argv[0]}")
    return result


async def check_command(
    runner: CommandRunner,
    step: str,
    args: Sequence[str],
    *,
    capture: bool = True,
    cwd: Path | None = None,
) -> CommandResult:
    """Run a command and raise ExternalCommandError if it exits non-zero."""
    result = await runner(args, capture=capture, cwd=cwd)
    if not result.ok:
        detail = (result.stderr or result.stdout).strip()
        raise ExternalCommandError(step, result.returncode, detail)
    return result
