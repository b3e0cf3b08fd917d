"""Host package manager integration for helper tools."""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import DependencyInstallError
from .privileges import privileged

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PackageProvider:
    """Make sure helper binaries exist, installing them with apt when missing."""

    package_manager_bin: str = "apt-get"
    auto_install: bool = True
    use_sudo: bool | None = None

    def ensure_command(
        self, binary: str, package: str | None = None, *, install: bool = True
    ) -> str:
        """Return the path to *binary*, installing *package* first if needed.

        With ``install=False`` a missing tool is reported instead of installed.
        """
        found = shutil.which(binary)
        if found:
            return found

        package_name = package or binary
        if not install:
            raise DependencyInstallError(
                f"Required tool '{binary}' not found. Install package '{package_name}' "
                "or run 'meshctl setup'."
            )
        if not self.auto_install:
            raise DependencyInstallError(
                f"Required tool '{binary}' not found and automatic installation is disabled."
            )

        logger.info("%s not found, installing package %s", binary, package_name)
        self._run([self.package_manager_bin, "update"], step="update")
        self._run([self.package_manager_bin, "install", "-y", package_name], step="install")

        found = shutil.which(binary)
        if not found:
            raise DependencyInstallError(
                f"Installed package '{package_name}' but '{binary}' is still not on PATH."
            )
        return found

    def _run(self, args: Sequence[str], *, step: str) -> subprocess.CompletedProcess[str]:
        command = privileged(list(args), self.use_sudo)
        try:
            result = subprocess.run(  # noqa: S603, S607 - controlled command execution
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise DependencyInstallError(f"{command[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise DependencyInstallError(
                f"{self.package_manager_bin} {step} failed (exit {result.returncode}): "
                f"{message}. Please check your package manager."
            )
        return result


__all__ = ["PackageProvider"]
