"""Provider interfaces for meshctl."""
from __future__ import annotations

from .installer import ArchiveFetcher, ReleaseInstaller
from .packages import PackageProvider
from .release import ReleaseProvider, detect_architecture
from .systemd import SystemdError, SystemdProvider, parse_environment

__all__ = [
    "ArchiveFetcher",
    "PackageProvider",
    "ReleaseInstaller",
    "ReleaseProvider",
    "SystemdError",
    "SystemdProvider",
    "detect_architecture",
    "parse_environment",
]
