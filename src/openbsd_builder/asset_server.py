"""HTTP server that serves installation assets to the VM during an install."""

import asyncio
import atexit
import logging
import os
import signal
import socket
import sys
import tempfile
from pathlib import Path

from .constants import (
    ASSET_SERVER_BIND_ADDRESS,
    ASSET_SERVER_PORT,
    ASSET_SERVER_STARTUP_GRACE,
)
from .exceptions import VMStartupError
from .signal_manager import SignalManager

logger = logging.getLogger(__name__)


def is_port_available(
    address: str = ASSET_SERVER_BIND_ADDRESS, port: int = ASSET_SERVER_PORT
) -> bool:
    """Check whether this process may bind the TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((address, port))
        except OSError as e:
            logger.debug(f"Cannot bind {address}:{port}: {e}")
            return False
    return True


def _read_pid_file(pid_file: Path) -> int | None:
    try:
        pid_str = pid_file.read_text().strip()
    except FileNotFoundError:
        return None

    try:
        pid = int(pid_str)
    except ValueError:
        logger.warning(f"Invalid PID in file {pid_file}: {pid_str}")
        return None
    return pid if pid > 0 else None


async def cleanup_orphaned_asset_server(pid_file: Path) -> None:
    """Terminate an asset server left behind by a run that was killed.

    Only the process recorded in `pid_file` is touched; the file is removed afterwards.
    """
    if not pid_file.exists():
        return

    pid = _read_pid_file(pid_file)
    if pid is not None:
        try:
            os.kill(pid, 0)
            logger.info(f"Found orphaned asset server with PID {pid}")

            os.kill(pid, signal.SIGTERM)
            await asyncio.sleep(0.5)

            try:
                os.kill(pid, 0)
                os.kill(pid, signal.SIGKILL)
                logger.info(f"Force killed orphaned asset server {pid}")
            except ProcessLookupError:
                logger.info(f"Orphaned asset server {pid} terminated gracefully")

        except ProcessLookupError:
            logger.debug(f"Orphaned asset server {pid} no longer exists")
        except PermissionError:
            logger.warning(f"PID {pid} from {pid_file} belongs to another user, leaving it alone")

    pid_file.unlink(missing_ok=True)


class AssetServer:
    """Runs `python -m http.server` over a directory for the lifetime of a scope.

    Use as an async context manager. The server is stopped when the scope exits
    normally or by exception, from the signal handler on SIGINT/SIGTERM, and from
    an atexit hook as a last resort.
    """

    def __init__(
        self,
        directory: Path,
        pid_file: Path,
        signal_manager: SignalManager | None = None,
        address: str = ASSET_SERVER_BIND_ADDRESS,
        port: int = ASSET_SERVER_PORT,
        startup_grace: float = ASSET_SERVER_STARTUP_GRACE,
    ):
        self.directory = directory
        self.pid_file = pid_file
        self.signal_manager = signal_manager
        self.address = address
        self.port = port
        self.startup_grace = startup_grace
        self.process: asyncio.subprocess.Process | None = None

    def build_command(self) -> list[str]:
        return [
            sys.executable,
            "-m",
            "http.server",
            "--directory",
            str(self.directory),
            "--bind",
            self.address,
            str(self.port),
        ]

    async def start(self) -> None:
        if self.process is not None:
            raise VMStartupError("Asset server is already running")

        logger.info(f"==> Starting HTTP server on {self.address}:{self.port}...")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.build_command(),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise VMStartupError(f"Failed to start asset server: {e}")

        atexit.register(self._cleanup_on_exit)
        if self.signal_manager:
            self.signal_manager.add_shutdown_handler(self._terminate_sync)
        self._write_pid_file(self.process.pid)

        await asyncio.sleep(self.startup_grace)
        if self.process.returncode is not None:
            code = self.process.returncode
            await self.stop()
            raise VMStartupError(
                f"HTTP server failed to start on port {self.port} (exit status {code})"
            )
        logger.debug(f"Asset server running with PID {self.process.pid}")

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the server and forget the PID file."""
        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning("Asset server did not stop gracefully, killing...")
                    self.process.kill()
                    await self.process.wait()
            except ProcessLookupError:
                pass
            logger.debug("Asset server stopped")

        if self.signal_manager:
            self.signal_manager.remove_shutdown_handler(self._terminate_sync)
        atexit.unregister(self._cleanup_on_exit)
        self.pid_file.unlink(missing_ok=True)
        self.process = None

    def _terminate_sync(self) -> None:
        """Synchronous termination, safe to call from a signal handler."""
        if self.process and self.process.returncode is None:
            try:
                os.kill(self.process.pid, signal.SIGTERM)
                logger.debug(f"Sent SIGTERM to asset server {self.process.pid}")
            except ProcessLookupError:
                pass

    def _cleanup_on_exit(self) -> None:
        """Cleanup handler called by atexit."""
        self._terminate_sync()
        self.pid_file.unlink(missing_ok=True)

    def _write_pid_file(self, pid: int) -> None:
        """Write process PID to file atomically."""
        pid_dir = self.pid_file.parent
        pid_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w", dir=pid_dir, prefix=f"{self.pid_file.name}.tmp.", delete=False
        ) as tmp_file:
            tmp_file.write(str(pid))
            tmp_path = tmp_file.name
        os.replace(tmp_path, self.pid_file)
        logger.debug(f"Wrote PID {pid} to {self.pid_file}")

    async def __aenter__(self) -> "AssetServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
