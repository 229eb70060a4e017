"""Configuration management for the OpenBSD builder."""

import getpass
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping

from .constants import (
    OPENBSD_ARCH,
    OPENBSD_MIRROR,
    OPENBSD_VERSION,
    SSH_CONFIG_PATH,
    SSH_HOST_ALIAS,
    SSH_PORT,
    SSH_PUBLIC_KEY_PATH,
    VM_CPUS,
    VM_DISK_SIZE,
    VM_HOST_NAME,
    VM_MEMORY,
    WORK_DIRECTORY_NAME,
)
from .exceptions import VMConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "OPENBSD_CONFIG_FILE"

# Configuration key -> environment variable
ENVIRONMENT_KEYS = {
    "version": "OPENBSD_VERSION",
    "mirror": "OPENBSD_MIRROR",
    "cpus": "OPENBSD_CPUS",
    "memory": "OPENBSD_MEM",
    "disk-size": "OPENBSD_DISK",
    "ssh-key": "OPENBSD_SSH_KEY",
    "user": "OPENBSD_USER",
    "hostname": "OPENBSD_HOSTNAME",
    "image": "OPENBSD_IMAGE",
    "ssh-port": "OPENBSD_SSH_PORT",
    "ssh-host": "OPENBSD_SSH_HOST",
    "ssh-config": "OPENBSD_SSH_CONFIG",
    "work-dir": "OPENBSD_WORK_DIR",
    "debug": "OPENBSD_DEBUG",
}

VERSION_REGEXP = re.compile(r"^\d+\.\d+$")
SIZE_REGEXP = re.compile(r"^[1-9]\d*[KMGT]?$")
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def _default_work_directory() -> Path:
    cache_home = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(cache_home) / WORK_DIRECTORY_NAME


def load_config_file(config_path: str | Path) -> Dict[str, Any]:
    """Load configuration values from a JSON file."""
    path = Path(config_path)
    try:
        with open(path) as f:
            values = json.load(f)
        logger.debug(f"Loaded configuration from {path}")
    except FileNotFoundError:
        raise VMConfigurationError(f"Configuration file not found: {path}")
    except json.JSONDecodeError as e:
        raise VMConfigurationError(f"Invalid JSON in configuration file: {e}")
    except OSError as e:
        raise VMConfigurationError(f"Failed to load configuration: {e}")

    if not isinstance(values, dict):
        raise VMConfigurationError(f"Invalid configuration file {path}: expected a JSON object")

    unknown = sorted(set(values) - set(ENVIRONMENT_KEYS))
    if unknown:
        raise VMConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
    return values


def resolve_values(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Merge the optional JSON config file with non-empty `OPENBSD_*` variables.

    Environment variables take precedence over the configuration file.
    """
    environ = os.environ if environ is None else environ

    values: Dict[str, Any] = {}
    config_file = environ.get(CONFIG_FILE_ENV)
    if config_file:
        values.update(load_config_file(config_file))

    for key, env_var in ENVIRONMENT_KEYS.items():
        value = environ.get(env_var)
        if value is not None and value != "":
            values[key] = value
    return values


class VMConfig:
    """Configuration for one invocation.

    Values are resolved once from built-in defaults, then an optional mapping of overrides.
    The object is read-only afterwards.
    """

    def __init__(self, overrides: Mapping[str, Any] | None = None):
        """Initialize configuration.

        Args:
            overrides: Configuration values keyed like `ENVIRONMENT_KEYS`.
        """
        self._config: Dict[str, Any] = dict(overrides or {})
        self._validate_and_store_config()

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> "VMConfig":
        """Build configuration from the config file named in the environment, then the environment.

        Environment variables take precedence over the configuration file.
        """
        return cls(resolve_values(environ))

    def _validate_and_store_config(self) -> None:
        """Validate configuration parameters and store validated values."""
        version = str(self._config.get("version", OPENBSD_VERSION))
        if not VERSION_REGEXP.match(version):
            raise VMConfigurationError(f"Invalid version: {version}. Expected: <major>.<minor>")
        self._version = version

        self._mirror = str(self._config.get("mirror", OPENBSD_MIRROR)).rstrip("/")
        if not self._mirror.startswith(("http://", "https://")):
            raise VMConfigurationError(f"Invalid mirror URL: {self._mirror}")

        self._cpus = self._positive_int("cpus", self._config.get("cpus", VM_CPUS))
        self._memory = self._size("memory", self._config.get("memory", VM_MEMORY))
        self._disk_size = self._size("disk-size", self._config.get("disk-size", VM_DISK_SIZE))

        port = self._positive_int("ssh-port", self._config.get("ssh-port", SSH_PORT))
        if port < 1024 or port > 65535:
            raise VMConfigurationError(
                f"Invalid ssh-port: {port}. Expected: integer between 1024 and 65535"
            )
        self._ssh_port = port

        self._user = self._non_empty("user", self._config.get("user") or getpass.getuser())
        self._hostname = self._non_empty("hostname", self._config.get("hostname", VM_HOST_NAME))
        self._ssh_host = self._non_empty("ssh-host", self._config.get("ssh-host", SSH_HOST_ALIAS))

        self._ssh_key_path = self._path(self._config.get("ssh-key", SSH_PUBLIC_KEY_PATH))
        self._ssh_config_path = self._path(self._config.get("ssh-config", SSH_CONFIG_PATH))

        image = self._config.get("image")
        if image:
            self._image_path = self._path(image)
        else:
            short = self.version_short
            self._image_path = Path.home() / "vms" / f"openbsd{short}" / f"openbsd{short}.qcow2"

        work_dir = self._config.get("work-dir")
        self._work_directory = self._path(work_dir) if work_dir else _default_work_directory()

        # The work directory is deleted wholesale by --clean
        if self._image_path.absolute().is_relative_to(self._work_directory.absolute()):
            raise VMConfigurationError(
                f"Disk image {self._image_path} must not be inside the work directory "
                f"{self._work_directory}"
            )

        self._debug_enabled = self._bool("debug", self._config.get("debug", False))

    @staticmethod
    def _positive_int(name: str, value: Any) -> int:
        if isinstance(value, bool):
            raise VMConfigurationError(f"Invalid {name}: {value}. Expected: positive integer")
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise VMConfigurationError(f"Invalid {name}: {value}. Expected: positive integer")
        if number < 1:
            raise VMConfigurationError(f"Invalid {name}: {value}. Expected: positive integer")
        return number

    @staticmethod
    def _size(name: str, value: Any) -> str:
        size = str(value).strip().upper()
        if not SIZE_REGEXP.match(size):
            raise VMConfigurationError(f"Invalid {name}: {value}. Expected: e.g. 512M, 4G, 20G")
        return size

    @staticmethod
    def _non_empty(name: str, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        if not text or any(c.isspace() for c in text):
            raise VMConfigurationError(f"Invalid {name}: {value!r}. Expected: non-empty word")
        return text

    @staticmethod
    def _bool(name: str, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        raise VMConfigurationError(f"Invalid {name} setting: {value}. Expected: boolean")

    @staticmethod
    def _path(value: Any) -> Path:
        return Path(os.path.expanduser(str(value)))

    @property
    def version(self) -> str:
        """Get OpenBSD release, e.g. 7.7."""
        return self._version

    @property
    def version_short(self) -> str:
        """Get release without dots, as used in set names (77)."""
        return self._version.replace(".", "")

    @property
    def arch(self) -> str:
        return OPENBSD_ARCH

    @property
    def mirror(self) -> str:
        """Get mirror base URL without trailing slash."""
        return self._mirror

    @property
    def cpus(self) -> int:
        return self._cpus

    @property
    def memory(self) -> str:
        """Get memory size in QEMU notation."""
        return self._memory

    @property
    def disk_size(self) -> str:
        """Get disk image size in qemu-img notation."""
        return self._disk_size

    @property
    def ssh_key_path(self) -> Path:
        """Get path of the public key installed for the VM user."""
        return self._ssh_key_path

    @property
    def identity_file(self) -> Path:
        """Get the private key matching `ssh_key_path`."""
        if self._ssh_key_path.suffix == ".pub":
            return self._ssh_key_path.with_suffix("")
        return self._ssh_key_path

    @property
    def user(self) -> str:
        return self._user

    @property
    def hostname(self) -> str:
        return self._hostname

    @property
    def image_path(self) -> Path:
        """Get disk image path."""
        return self._image_path

    @property
    def ssh_port(self) -> int:
        """Get host port forwarded to the guest's SSH port."""
        return self._ssh_port

    @property
    def ssh_host(self) -> str:
        """Get SSH host alias of the build VM."""
        return self._ssh_host

    @property
    def ssh_config_path(self) -> Path:
        return self._ssh_config_path

    @property
    def work_directory(self) -> Path:
        """Get work directory."""
        return self._work_directory

    @property
    def debug_enabled(self) -> bool:
        """Check if debug mode is enabled."""
        return self._debug_enabled

    def __repr__(self) -> str:
        """String representation of configuration."""
        return ", ".join(
            [
                f"VMConfig(version={self.version}",
                f"mirror={self.mirror}",
                f"cpus={self.cpus}",
                f"memory={self.memory}",
                f"disk_size={self.disk_size}",
                f"user={self.user}",
                f"hostname={self.hostname}",
                f"image_path={self.image_path}",
                f"ssh_port={self.ssh_port}",
                f"ssh_host={self.ssh_host}",
                f"work_directory={self.work_directory}",
                f"debug={self.debug_enabled})",
            ]
        )


class BuildSettings:
    """The settings `openbsd-cargo-build` reads: the SSH host alias and the debug flag.

    VM sizing, image and install settings are not validated here, so a bad
    value for those does not block builds against an already installed VM.
    """

    def __init__(self, overrides: Mapping[str, Any] | None = None):
        values = dict(overrides or {})
        self._ssh_host = VMConfig._non_empty("ssh-host", values.get("ssh-host", SSH_HOST_ALIAS))
        self._debug_enabled = VMConfig._bool("debug", values.get("debug", False))

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> "BuildSettings":
        return cls(resolve_values(environ))

    @property
    def ssh_host(self) -> str:
        return self._ssh_host

    @property
    def debug_enabled(self) -> bool:
        return self._debug_enabled

    def __repr__(self) -> str:
        return f"BuildSettings(ssh_host={self.ssh_host}, debug={self.debug_enabled})"
