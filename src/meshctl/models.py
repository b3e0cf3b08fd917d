"""Data structures threaded through the setup workflow."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

EMAIL_ENV = "EMAIL"
PASSWORD_ENV = "PASSWORD"


@dataclass(frozen=True, slots=True)
class Credentials:
    """Account credentials the agent logs in with."""

    email: str
    password: str = field(repr=False)

    def __repr__(self) -> str:
        """Return a representation that never reveals the password."""
        return f"Credentials(email={self.email!r}, password='***')"

    @classmethod
    def from_environment(cls, environment: Mapping[str, str]) -> Credentials | None:
        """Return credentials stored in a service environment block, if complete."""
        email = environment.get(EMAIL_ENV, "")
        password = environment.get(PASSWORD_ENV, "")
        if not email or not password:
            return None
        return cls(email=email, password=password)


class InstallStatus(str, Enum):
    """Result of comparing the installed version with the latest release."""

    SKIPPED = "skipped"
    INSTALLED = "installed"


@dataclass(frozen=True, slots=True)
class InstallOutcome:
    """What the install reconciler did and where the live tree now lives."""

    status: InstallStatus
    version: str
    path: Path
    previous_version: str | None = None

    @property
    def changed(self) -> bool:
        """Return True when files were replaced."""
        return self.status is InstallStatus.INSTALLED


class ServiceState(str, Enum):
    """Observed state of the managed service."""

    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True, slots=True)
class ServiceSnapshot:
    """Read-only view of the service taken before reconfiguration."""

    state: ServiceState
    environment: dict[str, str] = field(default_factory=dict)

    @property
    def exists(self) -> bool:
        """Return True when the supervisor knows about the unit."""
        return self.state is not ServiceState.ABSENT


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    """Desired runtime configuration of the managed service.

    A descriptor is built fresh for every reconciliation pass and fully
    replaces the unit that was there before.
    """

    name: str
    description: str
    working_directory: Path
    exec_path: Path
    arguments: tuple[str, ...]
    restart: str = "always"
    environment: tuple[tuple[str, str], ...] = ()

    @classmethod
    def for_agent(
        cls,
        *,
        name: str,
        description: str,
        working_directory: Path,
        exec_path: Path,
        credentials: Credentials,
    ) -> ServiceDescriptor:
        """Build the descriptor that logs the agent in with *credentials*."""
        return cls(
            name=name,
            description=description,
            working_directory=working_directory,
            exec_path=exec_path,
            arguments=(
                "login",
                "--email",
                credentials.email,
                "--password",
                credentials.password,
            ),
            restart="always",
            environment=(
                (EMAIL_ENV, credentials.email),
                (PASSWORD_ENV, credentials.password),
            ),
        )

    @property
    def command(self) -> list[str]:
        """Return the start command as a list of words."""
        return [str(self.exec_path), *self.arguments]

    @property
    def credentials(self) -> Credentials | None:
        """Return the credentials embedded in the environment block."""
        return Credentials.from_environment(dict(self.environment))

    def template_context(self) -> dict[str, object]:
        """Return the context consumed by ``systemd/service.j2``."""
        return {
            "description": self.description,
            "working_directory": str(self.working_directory),
            "command": self.command,
            "restart": self.restart,
            "environment": list(self.environment),
        }

    def __repr__(self) -> str:
        """Return a representation without credential values."""
        return (
            f"ServiceDescriptor(name={self.name!r}, "
            f"working_directory={str(self.working_directory)!r}, "
            f"exec_path={str(self.exec_path)!r}, restart={self.restart!r})"
        )


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    """Everything the setup workflow resolved, returned to the caller."""

    version: str
    install: InstallOutcome
    descriptor: ServiceDescriptor | None
    previous_state: ServiceState
    dry_run: bool = False


__all__ = [
    "EMAIL_ENV",
    "PASSWORD_ENV",
    "Credentials",
    "InstallOutcome",
    "InstallStatus",
    "ServiceDescriptor",
    "ServiceSnapshot",
    "ServiceState",
    "WorkflowResult",
]
