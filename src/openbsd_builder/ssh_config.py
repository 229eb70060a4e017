"""Connectivity profile in the user's SSH configuration."""

import logging
import os
from pathlib import Path

import aiofiles

from .config import VMConfig

logger = logging.getLogger(__name__)


def render_host_entry(config: VMConfig) -> str:
    """Render the `Host` block for the build VM."""
    return (
        f"\nHost {config.ssh_host}\n"
        f"\tHostName 127.0.0.1\n"
        f"\tPort {config.ssh_port}\n"
        f"\tUser {config.user}\n"
        f"\tIdentityFile {config.identity_file}\n"
        f"\tStrictHostKeyChecking no\n"
        f"\tUserKnownHostsFile /dev/null\n"
        f"\tLogLevel ERROR\n"
    )


def has_host_entry(content: str, alias: str) -> bool:
    """Check whether a `Host` line in the configuration names the alias."""
    for line in content.splitlines():
        fields = line.replace("=", " ").split()
        if len(fields) >= 2 and fields[0].lower() == "host" and alias in fields[1:]:
            return True
    return False


async def ensure_host_entry(config: VMConfig) -> bool:
    """Append the build VM's `Host` block unless the alias is already configured.

    Returns:
        True if an entry was appended, False if one already existed
    """
    path: Path = config.ssh_config_path

    if path.exists():
        async with aiofiles.open(path, "r") as f:
            content = await f.read()
        if has_host_entry(content, config.ssh_host):
            logger.info(f"==> SSH config: {config.ssh_host} already exists")
            return False

    logger.info(f"==> Adding {config.ssh_host} to {path}...")
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    async with aiofiles.open(path, "a") as f:
        await f.write(render_host_entry(config))
    os.chmod(path, 0o600)
    logger.info(f"    ssh {config.ssh_host}")
    return True
