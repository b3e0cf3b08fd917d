"""Error taxonomy for the setup workflow.

Every failure is fatal: the CLI maps any :class:`SetupError` to exit status 1
and prints the stage that failed. Subclasses exist so that callers and tests
can tell the stages apart without parsing messages.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories surfaced by the workflow."""

    DEPENDENCY_INSTALL = "dependency-install"
    NETWORK = "network"
    ARCHITECTURE_UNSUPPORTED = "architecture-unsupported"
    DIRECTORY_CREATE = "directory-create"
    EXTRACTION = "extraction"
    MOVE = "move"
    SUPERVISOR = "supervisor"
    ACCOUNT_NOT_CONFIRMED = "account-not-confirmed"


class SetupError(RuntimeError):
    """Base class for every fatal workflow error."""

    kind: ErrorKind = ErrorKind.SUPERVISOR
    stage: str = "setup"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        """Store *message* and an optional override for the stage label."""
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class DependencyInstallError(SetupError):
    """Raised when the JSON helper tool is missing and cannot be installed."""

    kind = ErrorKind.DEPENDENCY_INSTALL
    stage = "dependencies"


class NetworkError(SetupError):
    """Raised when release metadata or the archive cannot be retrieved."""

    kind = ErrorKind.NETWORK
    stage = "network"


class ReleaseLookupError(NetworkError):
    """Raised when the latest release tag cannot be resolved."""

    stage = "version-resolve"


class DownloadError(NetworkError):
    """Raised when downloading the release archive fails."""

    stage = "download"


class ArchitectureUnsupportedError(SetupError):
    """Raised when the host CPU architecture has no published build."""

    kind = ErrorKind.ARCHITECTURE_UNSUPPORTED
    stage = "architecture"


class DirectoryCreateError(SetupError):
    """Raised when the installation root or target cannot be prepared."""

    kind = ErrorKind.DIRECTORY_CREATE
    stage = "install"


class ExtractionError(SetupError):
    """Raised when the downloaded archive cannot be extracted."""

    kind = ErrorKind.EXTRACTION
    stage = "extract"


class MoveError(SetupError):
    """Raised when staged files cannot be moved into the live target."""

    kind = ErrorKind.MOVE
    stage = "swap"


class SupervisorOperationError(SetupError):
    """Raised when a service supervisor operation fails."""

    kind = ErrorKind.SUPERVISOR
    stage = "service"


class AccountNotConfirmedError(SetupError):
    """Raised when the operator has not created an account yet."""

    kind = ErrorKind.ACCOUNT_NOT_CONFIRMED
    stage = "credentials"


__all__ = [
    "AccountNotConfirmedError",
    "ArchitectureUnsupportedError",
    "DependencyInstallError",
    "DirectoryCreateError",
    "DownloadError",
    "ErrorKind",
    "ExtractionError",
    "MoveError",
    "NetworkError",
    "ReleaseLookupError",
    "SetupError",
    "SupervisorOperationError",
]
