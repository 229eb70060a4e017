"""Install, boot and clean up the OpenBSD build VM."""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import aiofiles

from .asset_server import AssetServer, cleanup_orphaned_asset_server, is_port_available
from .autoinstall import (
    package_site_set,
    render_boot_conf,
    render_disklabel,
    render_install_conf,
    render_install_site,
    site_set_name,
    write_text,
)
from .config import VMConfig
from .constants import (
    ASSET_SERVER_BIND_ADDRESS,
    ASSET_SERVER_PORT,
    REQUIRED_INSTALL_TOOLS,
    SSH_READY_INTERVAL,
    SSH_READY_MAX_ATTEMPTS,
)
from .exceptions import (
    ExternalCommandError,
    InstallInterrupted,
    OperationInterrupted,
    PreconditionError,
)
from .mirror import MirrorClient, install_set_names, write_index
from .process import CommandRunner, check_command, run_command
from .qemu import build_boot_command, build_install_command, create_disk_image, require_tools
from .signal_manager import SignalManager
from .ssh import ReadinessOutcome, ReadinessResult, SSHClient, wait_for_ssh_ready
from .ssh_config import ensure_host_entry
from .workdir import WorkDirectory

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Install:
    """Provision a new disk image with an unattended install."""


@dataclass(frozen=True)
class Boot:
    """Boot the existing disk image, attached to the console or detached."""

    daemonize: bool = False


@dataclass(frozen=True)
class Clean:
    """Remove the work directory, never the disk image."""


@dataclass(frozen=True)
class Help:
    """Print usage."""


Mode = Install | Boot | Clean | Help


HELP_TEXT = """\
Autoinstall OpenBSD on QEMU

Usage:
  openbsd-vm                  # Install OpenBSD (interactive console)
  openbsd-vm --boot           # Boot existing image (serial console)
  openbsd-vm --boot --daemon  # Boot in background (daemonize)
  openbsd-vm --clean          # Remove work directory
  openbsd-vm --help           # Show help

Configuration (environment variables with defaults):
  OPENBSD_VERSION      OpenBSD version           (default: 7.7)
  OPENBSD_MIRROR       Mirror base URL           (default: https://openbsd.c3sl.ufpr.br/pub/OpenBSD)
  OPENBSD_CPUS         Number of CPUs            (default: 4)
  OPENBSD_MEM          Memory size               (default: 4G)
  OPENBSD_DISK         Disk size                 (default: 20G)
  OPENBSD_SSH_KEY      Path to SSH public key    (default: ~/.ssh/id_ed25519.pub)
  OPENBSD_USER         Username to create in VM  (default: current user)
  OPENBSD_HOSTNAME     VM hostname               (default: openbsd-builder.tesseras.local)
  OPENBSD_IMAGE        Output disk image path    (default: ~/vms/openbsd<ver>/openbsd<ver>.qcow2)
  OPENBSD_SSH_PORT     Host port for SSH forward (default: 7722)
  OPENBSD_SSH_HOST     SSH host alias            (default: openbsd-builder)
  OPENBSD_SSH_CONFIG   SSH client configuration  (default: ~/.ssh/config)
  OPENBSD_WORK_DIR     Staging directory         (default: ~/.cache/openbsd-builder)
  OPENBSD_CONFIG_FILE  JSON file with the same settings, overridden by the variables above
  OPENBSD_DEBUG        Verbose logging           (default: false)

Port 80 access (one-time, needed for OpenBSD autoinstall discovery):
  sudo sysctl -w net.ipv4.ip_unprivileged_port_start=80

After installation, connect with:
  ssh openbsd-builder
"""

PORT_HINT = """\
The OpenBSD installer needs HTTP on port 80 via QEMU user-mode NAT.

Fix with:
  sudo sysctl -w net.ipv4.ip_unprivileged_port_start=80

To make permanent, add to /etc/sysctl.d/99-local.conf:
  net.ipv4.ip_unprivileged_port_start=80"""


class VMLifecycleManager:
    """Dispatches one lifecycle mode against a configuration."""

    def __init__(
        self,
        config: VMConfig,
        signal_manager: SignalManager | None = None,
        *,
        runner: CommandRunner = run_command,
        mirror: MirrorClient | None = None,
        asset_server_factory: Callable[..., AssetServer] = AssetServer,
        port_available: Callable[[str, int], bool] = is_port_available,
        which: Callable[[str], str | None] = shutil.which,
        readiness_attempts: int = SSH_READY_MAX_ATTEMPTS,
        readiness_interval: float = SSH_READY_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.signal_manager = signal_manager
        self.runner = runner
        self.mirror = mirror or MirrorClient(config.mirror)
        self.work = WorkDirectory(config.work_directory, config.version, config.arch)

        self._asset_server_factory = asset_server_factory
        self._port_available = port_available
        self._which = which
        self._readiness_attempts = readiness_attempts
        self._readiness_interval = readiness_interval
        self._sleep = sleep

    async def run(self, mode: Install | Boot | Clean) -> ReadinessResult | None:
        """Run a mode that acts on the VM. Help is handled by the caller.

        Returns:
            The readiness result for a daemonized boot, otherwise None
        """
        if isinstance(mode, Install):
            await self.install()
        elif isinstance(mode, Boot):
            return await self.boot(daemonize=mode.daemonize)
        elif isinstance(mode, Clean):
            self.clean()
        else:
            raise TypeError(f"Unknown mode: {mode!r}")
        return None

    async def install(self) -> None:
        """Provision a new disk image. Refuses to touch an existing one.

        SIGINT/SIGTERM stops the install at the next step boundary, or immediately
        during the download, disk creation and installer steps. A disk image created
        by an install that did not complete is removed again.
        """
        config = self.config

        require_tools(REQUIRED_INSTALL_TOOLS, self._which)
        public_key = await self._read_public_key()

        if config.image_path.exists():
            raise PreconditionError(
                f"disk image already exists: {config.image_path}",
                hint="Delete it first to reinstall, or use --boot to boot it.",
            )

        await cleanup_orphaned_asset_server(self.work.asset_server_pid_file)

        if not self._port_available(ASSET_SERVER_BIND_ADDRESS, ASSET_SERVER_PORT):
            raise PreconditionError(
                f"Cannot bind to port {ASSET_SERVER_PORT} on {ASSET_SERVER_BIND_ADDRESS}",
                hint=PORT_HINT,
            )

        self._check_interrupted("Installation")
        self._log_install_summary()

        self.work.ensure()

        logger.info(f"==> Downloading OpenBSD {config.version} sets...")
        await self._until_shutdown(
            self.mirror.fetch_sets(
                config.version,
                config.arch,
                install_set_names(config.version_short),
                self.work.sets_dir,
            ),
            "Set download",
            InstallInterrupted,
        )

        self._check_interrupted("Installation")
        logger.info("==> Generating install.conf...")
        await write_text(self.work.install_conf_path, render_install_conf(config, public_key))

        logger.info("==> Generating disklabel...")
        await write_text(self.work.disklabel_path, render_disklabel())

        logger.info("==> Generating install.site...")
        await write_text(
            self.work.install_site_path, render_install_site(config), executable=True
        )

        site_set = site_set_name(config)
        logger.info(f"==> Packaging {site_set}...")
        package_site_set(self.work.site_dir, self.work.sets_dir / site_set)
        write_index(self.work.sets_dir)

        logger.info("==> Setting up TFTP...")
        self.work.stage_network_boot()
        await write_text(self.work.boot_conf_path, render_boot_conf())

        self._check_interrupted("Installation")
        try:
            await self._until_shutdown(
                create_disk_image(self.runner, config.image_path, config.disk_size),
                "Disk image creation",
                InstallInterrupted,
            )

            server = self._asset_server_factory(
                self.work.mirror_root, self.work.asset_server_pid_file, self.signal_manager
            )
            async with server:
                logger.info(f"==> Installing OpenBSD {config.version}...")
                logger.info("    This takes ~5-10 minutes. The VM will reboot after install.")
                logger.info(
                    "    On first boot, rc.firsttime installs packages then shuts down the VM."
                )
                await self._run_installer()
        except BaseException:
            # The image did not exist before this install, so it holds no provisioned system
            if config.image_path.exists():
                logger.warning(f"Removing incomplete disk image {config.image_path}")
                config.image_path.unlink()
            raise

        logger.info("==> Installation complete!")

        await ensure_host_entry(config)

        logger.info("Boot the VM:")
        logger.info("  openbsd-vm --boot")
        logger.info("  openbsd-vm --boot --daemon   # background")
        logger.info("Connect:")
        logger.info(f"  ssh {config.ssh_host}")

    async def _run_installer(self) -> None:
        """Run QEMU in the foreground until the guest powers itself off."""
        cmd = build_install_command(self.config, self.work)
        result = await self._until_shutdown(
            self.runner(cmd, capture=False),
            "Installation before the VM shut down",
            InstallInterrupted,
        )
        if not result.ok:
            raise ExternalCommandError("OpenBSD install (QEMU)", result.returncode)

    def _shutdown_requested(self) -> bool:
        return self.signal_manager is not None and self.signal_manager.is_shutdown_requested()

    def _check_interrupted(
        self, what: str, error: type[OperationInterrupted] = InstallInterrupted
    ) -> None:
        if self._shutdown_requested():
            raise error(f"{what} interrupted")

    async def _until_shutdown(
        self,
        operation: Awaitable[T],
        what: str,
        error: type[OperationInterrupted] = OperationInterrupted,
    ) -> T:
        """Await `operation` unless a shutdown is requested first.

        A shutdown request wins even when the operation finished in the same round,
        so no later step runs after an interrupt.
        """
        task = asyncio.ensure_future(operation)
        if self.signal_manager is None:
            return await task

        shutdown = asyncio.create_task(self.signal_manager.shutdown_event.wait())
        try:
            await asyncio.wait({task, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            shutdown.cancel()

        if self._shutdown_requested():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise error(f"{what} interrupted")
        return task.result()

    async def boot(self, daemonize: bool = False) -> ReadinessResult | None:
        """Boot the installed image.

        In daemonized mode QEMU detaches and SSH readiness is polled; running out of
        attempts is only a warning since the VM may still be booting. SIGINT/SIGTERM
        stops the foreground VM, or the polling, with OperationInterrupted.
        """
        config = self.config

        if not config.image_path.exists():
            raise PreconditionError(
                f"disk image not found: {config.image_path}",
                hint="Run openbsd-vm first to install.",
            )

        logger.info(
            f"==> Booting OpenBSD {config.version} ({config.memory} RAM, {config.cpus} CPUs)"
        )
        logger.info(f"    SSH: ssh -p {config.ssh_port} {config.user}@127.0.0.1")
        if not daemonize:
            logger.info("    Exit: Ctrl-A X")

        self._check_interrupted("Boot", OperationInterrupted)
        await self._until_shutdown(
            check_command(
                self.runner, "QEMU", build_boot_command(config, daemonize), capture=daemonize
            ),
            "Boot",
        )

        if not daemonize:
            return None

        logger.info("    Waiting for SSH...")
        client = SSHClient.for_address(
            config.user,
            "127.0.0.1",
            config.ssh_port,
            runner=self.runner,
            identity_file=config.identity_file,
        )
        result = await self._until_shutdown(
            wait_for_ssh_ready(
                client.probe,
                self._readiness_attempts,
                self._readiness_interval,
                self._sleep,
                should_stop=self._shutdown_requested,
            ),
            "Waiting for SSH",
        )
        if result.outcome is ReadinessOutcome.INTERRUPTED:
            raise OperationInterrupted("Waiting for SSH interrupted")
        if result.ready:
            logger.info("    SSH ready!")
        else:
            waited = self._readiness_attempts * self._readiness_interval
            logger.warning(
                f"    Warning: SSH not ready after {waited:.0f}s (VM may still be booting)"
            )
        return result

    def clean(self) -> None:
        """Remove the work directory. The disk image is left alone."""
        self._check_interrupted("Clean", OperationInterrupted)
        logger.info(f"==> Removing work directory: {self.work.root}")
        self.work.remove()
        logger.info(f"==> Done (disk image at {self.config.image_path} was NOT removed)")

    async def _read_public_key(self) -> str:
        path = self.config.ssh_key_path
        if not path.is_file():
            raise PreconditionError(
                f"SSH public key not found: {path}",
                hint="Set OPENBSD_SSH_KEY to your public key path.",
            )
        async with aiofiles.open(path, "r") as f:
            key = (await f.read()).strip()
        if not key:
            raise PreconditionError(
                f"SSH public key is empty: {path}",
                hint="Set OPENBSD_SSH_KEY to your public key path.",
            )
        return key

    def _log_install_summary(self) -> None:
        config = self.config
        logger.info(f"==> OpenBSD {config.version} autoinstall on QEMU")
        logger.info(f"    Mirror:   {config.mirror}")
        logger.info(f"    CPUs:     {config.cpus}")
        logger.info(f"    Memory:   {config.memory}")
        logger.info(f"    Disk:     {config.disk_size}")
        logger.info(f"    User:     {config.user}")
        logger.info(f"    Hostname: {config.hostname}")
        logger.info(f"    Image:    {config.image_path}")
        logger.info(f"    SSH port: {config.ssh_port}")
