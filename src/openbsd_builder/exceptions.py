"""Custom exceptions for the OpenBSD builder."""


class OpenBSDBuilderError(Exception):
    """Base exception for all OpenBSD builder errors."""

    pass


class VMConfigurationError(OpenBSDBuilderError):
    """Raised when configuration is invalid."""

    pass


class PreconditionError(OpenBSDBuilderError):
    """Raised when an operation cannot start in the current state.

    The optional hint tells the operator how to get out of that state.
    """

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.hint = hint


class SSHConnectivityError(PreconditionError):
    """Raised when the remote build host cannot be reached."""

    pass


class ExternalCommandError(OpenBSDBuilderError):
    """Raised when an external command exits non-zero."""

    def __init__(self, step: str, returncode: int, detail: str = ""):
        message = f"{step} failed with exit status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.step = step
        self.returncode = returncode
        self.detail = detail


class RemoteBuildError(ExternalCommandError):
    """Raised when the remote build command fails."""

    pass


class MirrorFetchError(OpenBSDBuilderError):
    """Raised when an installation set cannot be downloaded."""

    pass


class VMStartupError(OpenBSDBuilderError):
    """Raised when a supervised process fails to start."""

    pass


class OperationInterrupted(OpenBSDBuilderError):
    """Raised when SIGINT or SIGTERM stops an operation before it finished."""

    pass


class InstallInterrupted(OperationInterrupted):
    """Raised when an install is interrupted by a signal."""

    pass
