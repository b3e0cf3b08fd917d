"""Jinja2 template rendering with optional on-disk overrides."""
from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined

_SYSTEMD_ESCAPES = (
    ("\\", "\\\\"),
    ('"', '\\"'),
    ("%", "%%"),
)


def systemd_quote(value: object) -> str:
    """Return *value* as a double-quoted systemd unit word.

    Backslashes and quotes are escaped, and ``%`` is doubled so that systemd
    does not expand it as a specifier.
    """
    text = str(value)
    for raw, escaped in _SYSTEMD_ESCAPES:
        text = text.replace(raw, escaped)
    return f'"{text}"'


def systemd_exec_quote(value: object) -> str:
    """Quote *value* for ``ExecStart=``, where ``$`` also needs escaping."""
    return systemd_quote(str(value).replace("$", "$$"))


def systemd_command(words: Sequence[object]) -> str:
    """Join *words* into an ``ExecStart=`` command line."""
    return " ".join(systemd_exec_quote(word) for word in words)


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in templates, letting files in *override_dir* shadow them."""

    environment: Environment
    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Create an engine whose loader prefers templates in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("meshctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        environment.filters["systemd_quote"] = systemd_quote
        environment.filters["systemd_exec_quote"] = systemd_exec_quote
        environment.filters["systemd_command"] = systemd_command
        return cls(environment=environment, override_dir=override_dir)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self.environment.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return False when nothing changed."""
        rendered = self.render_to_string(name, context)
        if destination.exists():
            current = destination.read_text(encoding="utf-8")
            if current == rendered:
                return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = destination.with_name(f".{destination.name}.tmp")
        tmp_path.unlink(missing_ok=True)
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
        os.chmod(tmp_path, mode)
        tmp_path.replace(destination)
        return True


__all__ = ["TemplateEngine", "systemd_command", "systemd_exec_quote", "systemd_quote"]
