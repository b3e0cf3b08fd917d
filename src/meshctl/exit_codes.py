"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes used by the CLI. Every fatal error shares one status."""

    OK = 0
    FAILURE = 1
