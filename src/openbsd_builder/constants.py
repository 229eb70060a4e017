"""
Default constants for the OpenBSD builder.

Every value here is a default only; the user-facing ones can be overridden through the
configuration file or the environment (see `config.VMConfig`).
"""

# Release and mirror
OPENBSD_VERSION = "7.7"
OPENBSD_MIRROR = "https://openbsd.c3sl.ufpr.br/pub/OpenBSD"
OPENBSD_ARCH = "amd64"

# VM sizing
VM_CPUS = 4
VM_MEMORY = "4G"
VM_DISK_SIZE = "20G"

# VM identity
VM_HOST_NAME = "openbsd-builder.tesseras.local"
SSH_PUBLIC_KEY_PATH = "~/.ssh/id_ed25519.pub"
SSH_CONFIG_PATH = "~/.ssh/config"
SSH_HOST_ALIAS = "openbsd-builder"
SSH_PORT = 7722
GUEST_SSH_PORT = 22

# Asset serving: QEMU user networking forwards guest 10.0.2.2:80 to host 127.0.0.1:80
ASSET_SERVER_BIND_ADDRESS = "127.0.0.1"
ASSET_SERVER_PORT = 80
NAT_GATEWAY_ADDRESS = "10.0.2.2"
ASSET_SERVER_STARTUP_GRACE = 1.0

# Readiness polling after a daemonized boot
SSH_READY_MAX_ATTEMPTS = 60
SSH_READY_INTERVAL = 2.0
SSH_READY_CONNECT_TIMEOUT = 2

# External tools
QEMU_SYSTEM_BINARY = "qemu-system-x86_64"
QEMU_IMG_BINARY = "qemu-img"
REQUIRED_INSTALL_TOOLS = (QEMU_SYSTEM_BINARY, QEMU_IMG_BINARY)

# Work directory layout
WORK_DIRECTORY_NAME = "openbsd-builder"
MIRROR_DIR_NAME = "mirror"
SITE_DIR_NAME = "site"
TFTP_DIR_NAME = "tftp"
INSTALL_CONF_FILE_NAME = "install.conf"
DISKLABEL_FILE_NAME = "disklabel"
INSTALL_SITE_FILE_NAME = "install.site"
BOOT_CONF_FILE_NAME = "boot.conf"
INDEX_FILE_NAME = "index.txt"
PXE_BOOTFILE_NAME = "auto_install"
ASSET_SERVER_PID_FILE_NAME = "asset-server.pid"
PARTIAL_DOWNLOAD_SUFFIX = ".part"

# Guest first-boot payload
GUEST_DISABLED_SERVICES = (
    "sndiod",
    "smtpd",
    "slaacd",
    "cron",
    "pflogd",
    "syslogd",
    "ntpd",
    "resolvd",
)
GUEST_ENABLED_SERVICES = ("apmd",)
GUEST_FIRSTBOOT_PACKAGES = ("rust", "just", "rsync--", "sqlite3")
EXCLUDED_INSTALL_SETS = ("game", "xbase", "xfont", "xserv", "xshare")

# Remote builds
CARGO_MANIFEST_FILE_NAME = "Cargo.toml"
CARGO_TARGET_DIR_NAME = "target"
DEFAULT_BUILD_PROFILE = "release"
DEFAULT_OUTPUT_SUBDIR = "target/openbsd"
SYNC_EXCLUDES = ("target/", ".git/")
NON_BINARY_SUFFIXES = (".so", ".dylib", ".d")
REMOTE_SHUTDOWN_COMMAND = "doas shutdown -p now"
