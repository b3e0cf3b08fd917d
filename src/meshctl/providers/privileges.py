"""Helpers for running privileged host commands."""
from __future__ import annotations

import os
import shutil


def needs_sudo(use_sudo: bool | None = None) -> bool:
    """Return True when privileged commands must be prefixed with ``sudo``.

    ``None`` means "decide automatically": root runs commands directly, any
    other user goes through ``sudo`` when it is installed.
    """
    if use_sudo is not None:
        return use_sudo
    if os.geteuid() == 0:
        return False
    return shutil.which("sudo") is not None


def privileged(args: list[str], use_sudo: bool | None = None) -> list[str]:
    """Return *args* prefixed with ``sudo`` when required."""
    if needs_sudo(use_sudo):
        return ["sudo", *args]
    return list(args)


__all__ = ["needs_sudo", "privileged"]
