"""Systemd provider for managing the agent service unit."""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import SupervisorOperationError
from ..templates import TemplateEngine
from .privileges import privileged

logger = logging.getLogger(__name__)

UNIT_TEMPLATE = "systemd/service.j2"
UNIT_MODE = 0o600


class SystemdError(SupervisorOperationError):
    """Raised when systemd operations fail."""


def parse_environment(raw: str) -> dict[str, str]:
    """Parse the ``Environment=`` property reported by ``systemctl show``.

    systemd joins assignments with spaces and quotes those that contain
    whitespace or special characters, so the value is split with shell rules.
    """
    text = raw.strip()
    if text.startswith("Environment="):
        text = text[len("Environment=") :]
    try:
        words = shlex.split(text)
    except ValueError:
        words = text.split()
    environment: dict[str, str] = {}
    for word in words:
        key, sep, value = word.partition("=")
        if sep and key:
            environment[key] = value
    return environment


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage the systemd unit that runs the agent."""

    templates: TemplateEngine
    service_name: str = "blockmesh"
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    use_sudo: bool | None = None

    def unit_name(self) -> str:
        """Return the systemd unit name for the service."""
        return f"{self.service_name}.service"

    def unit_path(self) -> Path:
        """Return the full path for the unit file."""
        return self.systemd_dir / self.unit_name()

    def render_unit(self, context: Mapping[str, object]) -> bool:
        """Write the unit file from *context*; return True when it changed."""
        path = self.unit_path()
        if _writable(path):
            return self.templates.render_to_path(UNIT_TEMPLATE, path, context, mode=UNIT_MODE)

        rendered = self.templates.render_to_string(UNIT_TEMPLATE, context)
        # Create the file with its final mode before any content reaches it.
        self._run_command(
            privileged(
                ["install", "-m", f"{UNIT_MODE:o}", "/dev/null", str(path)], self.use_sudo
            ),
            check=True,
            error_prefix=f"install {path}",
            capture_output=True,
        )
        self._run_command(
            privileged(["tee", str(path)], self.use_sudo),
            check=True,
            error_prefix=f"tee {path}",
            capture_output=True,
            input_text=rendered,
        )
        return True

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload", privileged_command=True)

    def enable(self) -> subprocess.CompletedProcess[str]:
        """Enable the unit for boot-start."""
        return self._systemctl("enable", self.unit_name(), privileged_command=True)

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit_name(), privileged_command=True)

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit_name(), privileged_command=True)

    def status(self) -> subprocess.CompletedProcess[str]:
        """Return the status output for the unit."""
        return self._systemctl("status", self.unit_name(), "--no-pager", check=False)

    def is_active(self) -> bool:
        """Return True when the unit is currently running."""
        result = self._systemctl("is-active", "--quiet", self.unit_name(), check=False)
        return result.returncode == 0

    def exists(self) -> bool:
        """Return True when systemd has a unit definition for the service."""
        result = self._systemctl(
            "show", self.unit_name(), "--property", "LoadState", "--value", check=False
        )
        load_state = (result.stdout or "").strip()
        if result.returncode == 0 and load_state:
            return load_state != "not-found"
        return self.unit_path().exists()

    def show_environment(self) -> dict[str, str]:
        """Return the environment variables configured on the unit."""
        result = self._systemctl(
            "show", self.unit_name(), "--property", "Environment", check=False
        )
        if result.returncode != 0:
            return {}
        return parse_environment(result.stdout or "")

    def follow_logs(self) -> Iterator[str]:
        """Yield journal lines for the unit as they arrive.

        The generator never finishes on its own; closing it (or interrupting
        the process) terminates the ``journalctl`` child.
        """
        command = privileged(
            [self.journalctl_bin, "--unit", self.unit_name(), "--follow", "--no-pager"],
            self.use_sudo,
        )
        try:
            process = subprocess.Popen(  # noqa: S603, S607
                command,
                stdout=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{command[0]} not found: {exc}") from exc
        try:
            if process.stdout is None:
                raise SystemdError(f"{command[0]} produced no output stream.")
            for line in process.stdout:
                yield line.rstrip("\n")
        finally:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
        privileged_command: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        cmd: list[str] = [self.systemctl_bin, command, *args]
        if privileged_command:
            cmd = privileged(cmd, self.use_sudo)
        return self._run_command(
            cmd,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            capture_output=True,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        logger.debug("Running %s", " ".join(args[:3]))
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=capture_output,
                input=input_text,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def _writable(path: Path) -> bool:
    if path.exists():
        return os.access(path, os.W_OK)
    return os.access(path.parent, os.W_OK)


__all__ = ["SystemdError", "SystemdProvider", "parse_environment"]
