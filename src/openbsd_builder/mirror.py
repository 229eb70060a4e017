"""Installation set download and local mirror listing."""

import logging
import os
import stat
import time
from pathlib import Path
from typing import Iterable

import aiofiles
import httpx

from .constants import INDEX_FILE_NAME, PARTIAL_DOWNLOAD_SUFFIX
from .exceptions import MirrorFetchError

logging.getLogger("httpcore.connection").setLevel(logging.ERROR)
logging.getLogger("httpcore.http11").setLevel(logging.ERROR)

logger = logging.getLogger(__name__)


def install_set_names(version_short: str) -> list[str]:
    """Files fetched from the mirror for a network install."""
    return [
        "SHA256.sig",
        "bsd",
        "bsd.mp",
        "bsd.rd",
        "pxeboot",
        f"base{version_short}.tgz",
        f"comp{version_short}.tgz",
        f"man{version_short}.tgz",
        "BUILDINFO",
    ]


class MirrorClient:
    """Downloads installation sets into a local directory acting as a cache."""

    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the mirror client.

        Args:
            base_url: Mirror URL up to, not including, the release directory
            transport: Optional httpx transport, used for testing
            timeout: Per-operation network timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    def set_url(self, version: str, arch: str, name: str) -> str:
        return f"{self.base_url}/{version}/{arch}/{name}"

    async def fetch_sets(
        self, version: str, arch: str, names: Iterable[str], destination: Path
    ) -> list[Path]:
        """Download each set that is not already present in `destination`.

        Presence is decided by exact file name. Any failed download raises
        MirrorFetchError and stops the remaining downloads.

        Returns:
            Paths of all requested sets
        """
        destination.mkdir(parents=True, exist_ok=True)
        paths = []

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            for name in names:
                target = destination / name
                paths.append(target)
                if target.is_file():
                    logger.info(f"    {name} (cached)")
                    continue

                logger.info(f"    {name}")
                await self._download(client, self.set_url(version, arch, name), target)

        return paths

    async def _download(self, client: httpx.AsyncClient, url: str, target: Path) -> None:
        """Stream a URL to `target` through a partial file renamed on success."""
        partial = target.with_name(target.name + PARTIAL_DOWNLOAD_SUFFIX)
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async with aiofiles.open(partial, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        await f.write(chunk)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise MirrorFetchError(f"Failed to download {url}: {e}") from e
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        os.replace(partial, target)
        logger.debug(f"Downloaded {url} to {target}")


def write_index(directory: Path) -> Path:
    """Write an `ls -l` style listing the installer uses to discover sets."""
    lines = []
    for entry in sorted(directory.iterdir()):
        if entry.name == INDEX_FILE_NAME or entry.name.endswith(PARTIAL_DOWNLOAD_SUFFIX):
            continue
        st = entry.stat()
        mtime = time.strftime("%b %d %H:%M", time.localtime(st.st_mtime))
        lines.append(
            f"{stat.filemode(st.st_mode)} {st.st_nlink:>2} {st.st_size:>10} {mtime} {entry.name}"
        )

    index = directory / INDEX_FILE_NAME
    index.write_text("\n".join(lines) + "\n")
    return index
