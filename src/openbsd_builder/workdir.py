"""Work directory layout used during an unattended install."""

import logging
import shutil
from pathlib import Path

from .constants import (
    ASSET_SERVER_PID_FILE_NAME,
    BOOT_CONF_FILE_NAME,
    DISKLABEL_FILE_NAME,
    INSTALL_CONF_FILE_NAME,
    INSTALL_SITE_FILE_NAME,
    MIRROR_DIR_NAME,
    PXE_BOOTFILE_NAME,
    SITE_DIR_NAME,
    TFTP_DIR_NAME,
)

logger = logging.getLogger(__name__)


class WorkDirectory:
    """Staging area for the asset mirror, site payload and TFTP files.

    Everything below the root is derived from configuration and downloads, so the
    whole tree can be deleted at any time.

        <root>/mirror/install.conf, disklabel        served over HTTP
        <root>/mirror/pub/OpenBSD/<ver>/<arch>/      installation sets
        <root>/site/install.site                     site set payload
        <root>/tftp/auto_install, bsd.rd, etc/       network boot
    """

    def __init__(self, root: Path, version: str, arch: str):
        self.root = root
        self.version = version
        self.arch = arch

    @property
    def mirror_root(self) -> Path:
        return self.root / MIRROR_DIR_NAME

    @property
    def sets_dir(self) -> Path:
        """Directory laid out like a mirror's per-release, per-architecture directory."""
        return self.mirror_root / "pub" / "OpenBSD" / self.version / self.arch

    @property
    def site_dir(self) -> Path:
        return self.root / SITE_DIR_NAME

    @property
    def tftp_dir(self) -> Path:
        return self.root / TFTP_DIR_NAME

    @property
    def install_conf_path(self) -> Path:
        return self.mirror_root / INSTALL_CONF_FILE_NAME

    @property
    def disklabel_path(self) -> Path:
        return self.mirror_root / DISKLABEL_FILE_NAME

    @property
    def install_site_path(self) -> Path:
        return self.site_dir / INSTALL_SITE_FILE_NAME

    @property
    def boot_conf_path(self) -> Path:
        return self.tftp_dir / "etc" / BOOT_CONF_FILE_NAME

    @property
    def asset_server_pid_file(self) -> Path:
        return self.root / ASSET_SERVER_PID_FILE_NAME

    def ensure(self) -> None:
        """Create the directory structure if missing."""
        for directory in (self.sets_dir, self.site_dir, self.boot_conf_path.parent):
            directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Work directory ready at {self.root}")

    def stage_network_boot(self) -> None:
        """Link the PXE loader and install kernel into the TFTP root."""
        links = {
            PXE_BOOTFILE_NAME: self.sets_dir / "pxeboot",
            "bsd.rd": self.sets_dir / "bsd.rd",
        }
        for name, target in links.items():
            link = self.tftp_dir / name
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target)

    def remove(self) -> bool:
        """Delete the work directory. Returns False if it did not exist."""
        if not self.root.exists():
            return False
        shutil.rmtree(self.root)
        return True
