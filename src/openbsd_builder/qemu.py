"""QEMU command lines and disk image creation for the OpenBSD VM."""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Callable, Iterable

from .config import VMConfig
from .constants import (
    GUEST_SSH_PORT,
    PXE_BOOTFILE_NAME,
    QEMU_IMG_BINARY,
    QEMU_SYSTEM_BINARY,
)
from .exceptions import ExternalCommandError, PreconditionError
from .process import CommandRunner, check_command
from .workdir import WorkDirectory

logger = logging.getLogger(__name__)


def find_missing_tool(
    tools: Iterable[str], which: Callable[[str], str | None] = shutil.which
) -> str | None:
    """Return the first tool not found on PATH, or None."""
    for tool in tools:
        if which(tool) is None:
            return tool
    return None


def require_tools(tools: Iterable[str], which: Callable[[str], str | None] = shutil.which) -> None:
    missing = find_missing_tool(tools, which)
    if missing:
        raise PreconditionError(
            f"{missing} not found.",
            hint="Install prerequisites first (qemu-system-x86_64 and qemu-img, e.g. qemu-full).",
        )


def _machine_args(config: VMConfig) -> list[str]:
    return [
        QEMU_SYSTEM_BINARY,
        "-enable-kvm",
        "-cpu",
        "host",
        "-machine",
        "q35,accel=kvm",
        "-smp",
        f"cpus={config.cpus}",
        "-m",
        config.memory,
        "-mem-prealloc",
    ]


def build_install_command(config: VMConfig, work: WorkDirectory) -> list[str]:
    """QEMU command that network-boots the installer against a blank disk.

    The user-mode network serves the TFTP root and hands out the PXE bootfile;
    the guest reaches the host's asset server through the NAT gateway.
    """
    netdev = ",".join(
        [
            "user",
            "id=n1",
            f"hostname={config.hostname}",
            f"tftp={work.tftp_dir}",
            f"bootfile={PXE_BOOTFILE_NAME}",
            f"hostfwd=tcp::{config.ssh_port}-:{GUEST_SSH_PORT}",
        ]
    )
    return _machine_args(config) + [
        "-drive",
        f"file={config.image_path},media=disk,if=virtio,cache=unsafe,aio=io_uring",
        "-device",
        "virtio-net-pci,netdev=n1",
        "-netdev",
        netdev,
        "-nographic",
    ]


def build_boot_command(config: VMConfig, daemonize: bool = False) -> list[str]:
    """QEMU command that boots the installed disk with SSH forwarded to the host."""
    cmd = _machine_args(config) + [
        "-boot",
        "c",
        "-drive",
        f"file={config.image_path},format=qcow2,if=virtio,cache=unsafe,aio=io_uring",
        "-device",
        "virtio-net-pci,netdev=net0",
        "-netdev",
        f"user,id=net0,hostfwd=tcp::{config.ssh_port}-:{GUEST_SSH_PORT}",
        "-nodefaults",
    ]

    if daemonize:
        cmd.extend(["-serial", "null", "-display", "none", "-daemonize"])
    else:
        cmd.extend(["-serial", "mon:stdio", "-nographic"])

    return cmd


async def create_disk_image(runner: CommandRunner, image_path: Path, size: str) -> None:
    """Create an empty qcow2 image."""
    logger.info(f"==> Creating disk image ({size})...")
    image_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        await check_command(
            runner,
            "Disk image creation",
            [QEMU_IMG_BINARY, "create", "-f", "qcow2", str(image_path), size],
        )
    except (ExternalCommandError, asyncio.CancelledError):
        # A half-written image would block every later install
        image_path.unlink(missing_ok=True)
        raise
