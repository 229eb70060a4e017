"""Build a Rust project on the OpenBSD VM over SSH and copy the binaries back."""

import logging
import shlex
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import aiofiles

from .constants import (
    CARGO_MANIFEST_FILE_NAME,
    CARGO_TARGET_DIR_NAME,
    DEFAULT_BUILD_PROFILE,
    DEFAULT_OUTPUT_SUBDIR,
    NON_BINARY_SUFFIXES,
    REMOTE_SHUTDOWN_COMMAND,
    SYNC_EXCLUDES,
)
from .exceptions import (
    ExternalCommandError,
    PreconditionError,
    RemoteBuildError,
    SSHConnectivityError,
)
from .process import CommandRunner, check_command, run_command
from .ssh import SSHClient

logger = logging.getLogger(__name__)


def profile_output_subdir(profile: str) -> str:
    """Map a cargo profile to its directory under `target/`."""
    # cargo writes the built-in "dev" profile to target/debug
    if profile == "dev":
        return "debug"
    return profile


def is_binary_name(name: str) -> bool:
    return bool(name) and name not in (".", "..") and not name.endswith(NON_BINARY_SUFFIXES)


def parse_package_name(manifest_text: str) -> str | None:
    """Return `[package].name` from a Cargo manifest, if declared."""
    try:
        manifest = tomllib.loads(manifest_text)
    except tomllib.TOMLDecodeError as e:
        logger.debug(f"Cannot parse manifest: {e}")
        return None

    package = manifest.get("package")
    if isinstance(package, dict):
        name = package.get("name")
        if isinstance(name, str) and name:
            return name
    return None


@dataclass
class BuildResult:
    remote_dir: str
    output_dir: Path
    binaries: list[str] = field(default_factory=list)
    copied: list[Path] = field(default_factory=list)


class RemoteBuildOrchestrator:
    """Sync, build, discover and retrieve against one SSH host alias."""

    def __init__(self, ssh_host: str, runner: CommandRunner = run_command):
        """Initialize the orchestrator.

        Args:
            ssh_host: Host alias from the SSH configuration written at install time
            runner: Command runner used for ssh, scp and rsync
        """
        self.ssh_host = ssh_host
        self.runner = runner
        self.ssh = SSHClient(ssh_host, runner=runner)

    async def build(
        self,
        project_path: Path,
        output_path: Path | None = None,
        build_profile: str = DEFAULT_BUILD_PROFILE,
        extra_build_args: Sequence[str] = (),
        stop_after: bool = False,
    ) -> BuildResult:
        """Build the project remotely and copy its binaries into `output_path`.

        Args:
            project_path: Local cargo project (must contain Cargo.toml)
            output_path: Destination directory, defaults to <project>/target/openbsd
            build_profile: cargo profile name
            extra_build_args: Arguments appended to `cargo build`
            stop_after: Power off the VM after a successful build

        Returns:
            BuildResult describing the discovered and copied binaries

        Raises:
            PreconditionError: No manifest in the project
            SSHConnectivityError: The host alias is unreachable
            RemoteBuildError: cargo exited non-zero
            ExternalCommandError: Any other step failed
        """
        project = Path(project_path).expanduser().resolve()
        manifest = project / CARGO_MANIFEST_FILE_NAME
        if not manifest.is_file():
            raise PreconditionError(f"No {CARGO_MANIFEST_FILE_NAME} in {project}")

        await self.check_connectivity()

        remote_user = await self._remote_user()
        remote_dir = f"/home/{remote_user}/{project.name}"
        remote_output = (
            f"{remote_dir}/{CARGO_TARGET_DIR_NAME}/{profile_output_subdir(build_profile)}"
        )

        logger.info(
            f"==> Building {project.name} on OpenBSD ({self.ssh_host}) [profile: {build_profile}]"
        )

        await self.sync(project, remote_dir)
        await self._cargo_build(remote_dir, build_profile, extra_build_args)

        binaries = await self.discover_binaries(remote_output, manifest)

        if output_path:
            output_dir = Path(output_path).expanduser()
        else:
            output_dir = project / DEFAULT_OUTPUT_SUBDIR
        output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"==> Copying binaries to {output_dir}...")
        copied = await self.retrieve(binaries, remote_output, output_dir)

        logger.info(f"==> Done. Binaries in {output_dir}/")
        for path in copied:
            logger.info(f"    {path.name} ({path.stat().st_size} bytes)")

        if stop_after:
            await self.stop_vm()

        return BuildResult(
            remote_dir=remote_dir, output_dir=output_dir, binaries=binaries, copied=copied
        )

    async def check_connectivity(self) -> None:
        if not await self.ssh.probe():
            raise SSHConnectivityError(
                f"Cannot reach {self.ssh_host} via SSH",
                hint="Is the VM running? Try: openbsd-vm --boot --daemon",
            )

    async def _remote_user(self) -> str:
        result = await self.ssh.run("whoami")
        user = result.stdout.strip()
        if not result.ok or not user:
            raise ExternalCommandError(
                "Remote user lookup", result.returncode, result.stderr.strip()
            )
        return user

    async def sync(self, project: Path, remote_dir: str) -> None:
        """Mirror the project tree into `remote_dir`, deleting files gone locally."""
        logger.info(f"==> Syncing source to {self.ssh_host}:{remote_dir}...")
        result = await self.ssh.run(f"mkdir -p {shlex.quote(remote_dir)}")
        if not result.ok:
            raise ExternalCommandError(
                "Remote directory creation", result.returncode, result.stderr.strip()
            )

        cmd = ["rsync", "-az", "--delete", "-e", "ssh"]
        for pattern in SYNC_EXCLUDES:
            cmd.extend(["--exclude", pattern])
        cmd.extend([f"{project}/", f"{self.ssh_host}:{remote_dir}/"])
        await check_command(self.runner, "Source sync (rsync)", cmd)

    async def _cargo_build(self, remote_dir: str, profile: str, extra_args: Sequence[str]) -> None:
        cargo = ["cargo", "build", "--profile", profile, *extra_args]
        logger.info(f"==> Running {' '.join(cargo)}...")
        result = await self.ssh.run(
            f"cd {shlex.quote(remote_dir)} && {shlex.join(cargo)}", capture=False
        )
        if not result.ok:
            raise RemoteBuildError("cargo build", result.returncode)

    async def discover_binaries(self, remote_output: str, manifest: Path) -> list[str]:
        """Find executables in the remote output directory.

        Falls back to the manifest's package name when the scan finds nothing. That
        name is not checked against what the build produced.
        """
        excludes = " ".join(
            f"! -name {shlex.quote('*' + suffix)}" for suffix in NON_BINARY_SUFFIXES
        )
        scan = (
            f"cd {shlex.quote(remote_output)} && "
            f"find . -maxdepth 1 -type f -perm -111 {excludes} -exec basename {{}} \\;"
        )
        result = await self.ssh.run(scan)

        names: list[str] = []
        if result.ok:
            found = {line.strip() for line in result.stdout.splitlines()}
            names = sorted(name for name in found if is_binary_name(name))
        if names:
            return names

        async with aiofiles.open(manifest, "r") as f:
            package = parse_package_name(await f.read())
        if package:
            logger.debug(f"No executables found in {remote_output}, expecting {package}")
            return [package]
        return []

    async def retrieve(
        self, binaries: Sequence[str], remote_output: str, output_dir: Path
    ) -> list[Path]:
        """Copy each binary that exists remotely; missing names are skipped."""
        copied = []
        for name in binaries:
            remote_path = f"{remote_output}/{name}"
            if not await self.ssh.path_is_file(remote_path):
                logger.debug(f"Skipping {name}: not found at {remote_path}")
                continue

            local_path = output_dir / name
            result = await self.ssh.copy_from(remote_path, local_path)
            if not result.ok:
                raise ExternalCommandError(
                    f"Copying {name}", result.returncode, result.stderr.strip()
                )
            logger.info(f"    {name}")
            copied.append(local_path)
        return copied

    async def stop_vm(self) -> None:
        """Ask the VM to power off. Failures are logged and ignored."""
        logger.info("==> Shutting down VM...")
        try:
            result = await self.ssh.run(REMOTE_SHUTDOWN_COMMAND)
        except Exception as e:
            logger.warning(f"Shutdown request failed: {e}")
            return
        if not result.ok:
            logger.debug(f"Shutdown request exited with status {result.returncode}")
