"""OpenBSD build VM provisioning and remote cargo builds."""

from importlib.metadata import version

from .exceptions import (
    ExternalCommandError,
    InstallInterrupted,
    MirrorFetchError,
    OpenBSDBuilderError,
    OperationInterrupted,
    PreconditionError,
    RemoteBuildError,
    SSHConnectivityError,
    VMConfigurationError,
    VMStartupError,
)

__version__ = version("openbsd-builder")


# Lazy imports so the exceptions can be used without loading httpx
def _get_lifecycle_manager():
    from .lifecycle import VMLifecycleManager

    return VMLifecycleManager


def _get_build_orchestrator():
    from .remote_build import RemoteBuildOrchestrator

    return RemoteBuildOrchestrator


def _get_vm_config():
    from .config import VMConfig

    return VMConfig


def __getattr__(name):
    if name == "VMLifecycleManager":
        return _get_lifecycle_manager()
    elif name == "RemoteBuildOrchestrator":
        return _get_build_orchestrator()
    elif name == "VMConfig":
        return _get_vm_config()
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "__version__",
    "VMLifecycleManager",
    "RemoteBuildOrchestrator",
    "VMConfig",
    "OpenBSDBuilderError",
    "VMConfigurationError",
    "PreconditionError",
    "SSHConnectivityError",
    "ExternalCommandError",
    "RemoteBuildError",
    "MirrorFetchError",
    "VMStartupError",
    "OperationInterrupted",
    "InstallInterrupted",
]
