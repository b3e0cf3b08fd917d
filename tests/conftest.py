"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import json
import os
import subprocess
import tarfile
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def make_archive(
    path: Path,
    members: Mapping[str, bytes],
    *,
    executable: Sequence[str] = (),
) -> Path:
    """Write a ``.tar.gz`` at *path* holding *members* (name -> content)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as archive:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755 if name in executable else 0o644
            archive.addfile(info, io.BytesIO(content))
    return path


def fake_jq_run(
    cmd: Sequence[str],
    *args: object,
    input: str | None = None,  # noqa: A002 - mirrors subprocess.run
    **kwargs: object,
) -> subprocess.CompletedProcess[str]:
    """Stand-in for ``jq -r .tag_name`` fed through ``subprocess.run``."""
    try:
        payload = json.loads(input or "")
    except json.JSONDecodeError:
        return subprocess.CompletedProcess(list(cmd), 5, stdout="", stderr="parse error")
    value = payload.get("tag_name") if isinstance(payload, dict) else None
    stdout = "null" if value is None else str(value)
    return subprocess.CompletedProcess(list(cmd), 0, stdout=f"{stdout}\n", stderr="")


class FakeResponse:
    """Minimal ``requests.Response`` replacement."""

    def __init__(self, text: str = "", *, status_code: int = 200, content: bytes = b"") -> None:
        """Store the canned body and status."""
        self.text = text
        self.status_code = status_code
        self.content = content

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def raise_for_status(self) -> None:
        import requests

        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size: int = 1024) -> list[bytes]:
        return [
            self.content[index : index + chunk_size]
            for index in range(0, len(self.content), chunk_size)
        ]


class FakeSession:
    """Replay queued responses (or exceptions) for successive ``get`` calls."""

    def __init__(self, responses: Sequence[FakeResponse | Exception] = ()) -> None:
        """Queue *responses* in call order."""
        self.responses = list(responses)
        self.calls: list[str] = []

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.calls.append(url)
        if not self.responses:
            raise AssertionError(f"unexpected request to {url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def fake_jq(monkeypatch: pytest.MonkeyPatch) -> None:
    """Route the JSON helper through :func:`fake_jq_run`."""
    monkeypatch.setattr("meshctl.providers.release.subprocess.run", fake_jq_run)
