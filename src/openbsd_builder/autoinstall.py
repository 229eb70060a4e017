"""Response files for the OpenBSD unattended installer.

The installer fetches `install.conf` from the HTTP server it booted from and answers
each question with the first line whose left side matches the prompt. `install.site`
is shipped inside the `site<ver>.tgz` set and runs once, chrooted into the new system,
at the end of the install.
"""

import logging
import os
import stat
import tarfile
from pathlib import Path

import aiofiles

from .config import VMConfig
from .constants import (
    EXCLUDED_INSTALL_SETS,
    GUEST_DISABLED_SERVICES,
    GUEST_ENABLED_SERVICES,
    GUEST_FIRSTBOOT_PACKAGES,
    NAT_GATEWAY_ADDRESS,
)

logger = logging.getLogger(__name__)

# Asterisks disable password login for the account
DISABLED_PASSWORD = "*************"


def site_set_name(config: VMConfig) -> str:
    return f"site{config.version_short}.tgz"


def render_install_conf(config: VMConfig, public_key: str) -> str:
    """Render the autoinstall answer file."""
    short = config.version_short
    site_set = site_set_name(config)
    set_selection = " ".join(
        [f"-{name}{short}.tgz" for name in EXCLUDED_INSTALL_SETS] + [site_set]
    )

    answers = [
        ("Change the default console to com0", "yes"),
        ("Which speed should com0 use", "115200"),
        ("System hostname", config.hostname),
        ("Password for root", DISABLED_PASSWORD),
        ("Allow root ssh login", "no"),
        ("Setup a user", config.user),
        ("Password for user", DISABLED_PASSWORD),
        ("Public ssh key for user", public_key.strip()),
        ("What timezone are you in", "UTC"),
        ("Location of sets", "http"),
        ("HTTP Server", NAT_GATEWAY_ADDRESS),
        ("Unable to connect using https. Use http instead", "yes"),
        (
            "URL to autopartitioning template for disklabel",
            f"http://{NAT_GATEWAY_ADDRESS}/disklabel",
        ),
        ("Set name(s)", set_selection),
        # The site set is built locally, so it is neither in SHA256 nor signed
        (f"Checksum test for {site_set} failed. Continue anyway", "yes"),
        (f"Unverified sets: {site_set}. Continue without verification", "yes"),
        ("Fetching of BUILDINFO failed. Continue anyway", "yes"),
    ]
    return "".join(f"{question} = {answer}\n" for question, answer in answers)


def render_disklabel() -> str:
    """Single root partition spanning the whole disk, no swap."""
    return "/ *\n"


def render_install_site(config: VMConfig) -> str:
    """Render the site script run at the end of the install."""
    lines = [
        "#!/bin/ksh",
        "set -o errexit",
        "",
        "# Package mirror",
        f'echo "{config.mirror}" > /etc/installurl',
        "",
        "# Enable SMT for better build performance",
        'echo "hw.smt=1" >> /etc/sysctl.conf',
        "",
        "# Enable ACPI power button shutdown (for QEMU system_powerdown)",
        'echo "machdep.pwraction=1" >> /etc/sysctl.conf',
        "",
        f"# doas permission for {config.user}",
        f'echo "permit nopass keepenv {config.user}" >> /etc/doas.conf',
        "",
        "# Enable apmd for ACPI events, disable unneeded daemons",
    ]
    lines += [f"rcctl enable {service}" for service in GUEST_ENABLED_SERVICES]
    lines += [f"rcctl disable {service}" for service in GUEST_DISABLED_SERVICES]
    lines += [
        "",
        "# Install build packages on first boot, then power off",
        "cat >> /etc/rc.firsttime << 'FIRSTTIME'",
        f"pkg_add {' '.join(GUEST_FIRSTBOOT_PACKAGES)}",
        "shutdown -p now",
        "FIRSTTIME",
    ]
    return "\n".join(lines) + "\n"


def render_boot_conf() -> str:
    return "stty com0 115200\nset tty com0\nboot tftp:/bsd.rd\n"


async def write_text(path: Path, content: str, executable: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w") as f:
        await f.write(content)
    if executable:
        mode = os.stat(path).st_mode
        os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def package_site_set(site_dir: Path, destination: Path) -> Path:
    """Archive the site directory as a gzipped tarball rooted at `.`."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(destination, "w:gz") as archive:
        for entry in sorted(site_dir.iterdir()):
            archive.add(entry, arcname=f"./{entry.name}")
    logger.debug(f"Packaged {site_dir} into {destination}")
    return destination
