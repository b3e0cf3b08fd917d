"""Install reconciler for the agent release archive.

Layout under the installation root::

    ~/blockmesh/
        blockmesh_v0.0.400/      extracted release (exactly one after success)
        target -> blockmesh_v0.0.400

The archive is extracted into a private staging directory inside the root,
renamed to its versioned name, and ``target`` is repointed with an atomic
symlink replace. The installed version marker is read back from the name of
the directory ``target`` resolves to.

A ``target`` that is a real directory (left by older shell-based installs)
carries no marker. It is removed before the symlink is created, which is the
only window in which ``target`` does not exist. There is no rollback: if a
step fails the workflow stops and the next run starts over.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..errors import DirectoryCreateError, ExtractionError, MoveError, ReleaseLookupError
from ..models import InstallOutcome, InstallStatus

logger = logging.getLogger(__name__)

RELEASE_DIR_PREFIX = "blockmesh_"
STAGING_PREFIX = ".meshctl-stage-"
_MARKER_PATTERN = re.compile(rf"^{re.escape(RELEASE_DIR_PREFIX)}(?P<tag>.+)$")


class ArchiveFetcher(Protocol):
    """Anything able to download an archive to a local path."""

    def fetch(self, url: str, destination: Path) -> Path:
        """Download *url* into *destination*."""
        ...


@dataclass(slots=True)
class ReleaseInstaller:
    """Keep ``<install_root>/target`` on the latest release."""

    install_root: Path
    binary_name: str
    asset_name: str
    fetcher: ArchiveFetcher
    tar_bin: str = "tar"

    def __post_init__(self) -> None:
        """Normalise the installation root."""
        self.install_root = self.install_root.expanduser()

    @property
    def target_dir(self) -> Path:
        """Return the live install path (a symlink once installed)."""
        return self.install_root / "target"

    @property
    def archive_path(self) -> Path:
        """Return where the downloaded archive is written."""
        return self.install_root / self.asset_name

    def release_dir(self, tag: str) -> Path:
        """Return the versioned directory that holds *tag*."""
        return self.install_root / f"{RELEASE_DIR_PREFIX}{tag}"

    def installed_version(self) -> str | None:
        """Return the tag currently deployed, or None when nothing usable is installed."""
        target = self.target_dir
        if not target.is_symlink():
            return None
        resolved = target.resolve()
        if not resolved.is_dir():
            return None
        match = _MARKER_PATTERN.match(resolved.name)
        if match is None:
            return None
        return match.group("tag")

    def reconcile(self, latest: str, *, url: str, dry_run: bool = False) -> InstallOutcome:
        """Install *latest* from *url* unless it is already deployed."""
        normalized = latest.strip()
        if not normalized:
            raise ReleaseLookupError("Release tag must be a non-empty string.")

        current = self.installed_version()
        if current is not None and current == normalized:
            logger.info("You are already using the latest version: %s.", normalized)
            return InstallOutcome(
                status=InstallStatus.SKIPPED,
                version=normalized,
                path=self.target_dir,
                previous_version=current,
            )

        if dry_run:
            return InstallOutcome(
                status=InstallStatus.INSTALLED,
                version=normalized,
                path=self.release_dir(normalized),
                previous_version=current,
            )

        self._ensure_root()
        archive = self.fetcher.fetch(url, self.archive_path)

        staging_dir = self._create_staging(normalized)
        staging_to_cleanup: Path | None = staging_dir
        try:
            self._extract(archive, staging_dir)
            archive.unlink(missing_ok=True)
            self._locate_binary(staging_dir)
            release_dir = self._promote(staging_dir, normalized)
            staging_to_cleanup = None
            self._repoint_target(release_dir)
        finally:
            if staging_to_cleanup is not None and staging_to_cleanup.exists():
                shutil.rmtree(staging_to_cleanup, ignore_errors=True)
            archive.unlink(missing_ok=True)

        logger.info("Extraction and move complete: %s", release_dir)
        return InstallOutcome(
            status=InstallStatus.INSTALLED,
            version=normalized,
            path=release_dir,
            previous_version=current,
        )

    def binary_path(self) -> Path:
        """Return the agent executable inside the live tree, addressed via ``target``."""
        return self.target_dir / self._locate_binary(self.target_dir)

    # ------------------------------------------------------------------
    def _ensure_root(self) -> None:
        if not self.install_root.exists():
            logger.info("Creating directory: %s", self.install_root)
        try:
            self.install_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DirectoryCreateError(
                f"Failed to create directory {self.install_root}: {exc}"
            ) from exc

    def _create_staging(self, tag: str) -> Path:
        try:
            staging = Path(
                tempfile.mkdtemp(prefix=f"{STAGING_PREFIX}{tag}-", dir=str(self.install_root))
            )
            os.chmod(staging, 0o755)
        except OSError as exc:
            raise DirectoryCreateError(f"Failed to create staging directory: {exc}") from exc
        return staging

    def _extract(self, archive: Path, destination: Path) -> None:
        tar_bin = shutil.which(self.tar_bin) or self.tar_bin
        cmd = [tar_bin, "-xzf", str(archive), "-C", str(destination)]
        try:
            result = subprocess.run(  # noqa: S603, S607 - controlled command execution
                cmd,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ExtractionError(f"The '{self.tar_bin}' command is required: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "tar extraction failed").strip()
            raise ExtractionError(f"Failed to extract {archive.name}: {message}")

    def _locate_binary(self, root: Path) -> Path:
        """Return the path of the agent binary relative to *root*."""
        direct = root / self.binary_name
        if direct.is_file():
            candidate = direct
        else:
            matches = sorted(
                path for path in root.rglob(self.binary_name) if path.is_file()
            )
            if not matches:
                raise ExtractionError(
                    f"Release archive did not contain the '{self.binary_name}' executable."
                )
            candidate = matches[0]
        mode = candidate.stat().st_mode
        if not mode & stat.S_IXUSR:
            candidate.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return candidate.relative_to(root)

    def _promote(self, staging_dir: Path, tag: str) -> Path:
        """Rename the staging directory to its versioned name."""
        release_dir = self.release_dir(tag)
        try:
            if release_dir.exists() or release_dir.is_symlink():
                # Leftover from an interrupted run; nothing points at it.
                _remove_path(release_dir)
            staging_dir.rename(release_dir)
        except OSError as exc:
            raise MoveError(f"Failed to move extracted files into {release_dir}: {exc}") from exc
        return release_dir

    def _repoint_target(self, release_dir: Path) -> None:
        """Atomically point ``target`` at *release_dir* and drop the old release."""
        target = self.target_dir
        previous = target.resolve() if target.is_symlink() else None
        temp_link = self.install_root / ".target.tmp"
        try:
            if target.exists() and not target.is_symlink():
                logger.info("Removing all contents in directory: %s", target)
                _remove_path(target)
            if temp_link.exists() or temp_link.is_symlink():
                temp_link.unlink()
            temp_link.symlink_to(release_dir.name, target_is_directory=True)
            temp_link.replace(target)
        except OSError as exc:
            raise MoveError(f"Failed to activate {release_dir.name} at {target}: {exc}") from exc

        if (
            previous is not None
            and previous != release_dir.resolve()
            and previous.parent == self.install_root.resolve()
            and previous.exists()
        ):
            try:
                _remove_path(previous)
            except OSError as exc:
                raise MoveError(f"Failed to remove previous release {previous}: {exc}") from exc


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


__all__ = ["ArchiveFetcher", "ReleaseInstaller", "RELEASE_DIR_PREFIX"]
