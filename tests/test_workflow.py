"""End-to-end workflow scenarios against a simulated host."""
from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from conftest import FakeResponse, FakeSession, fake_jq_run, make_archive
from meshctl.config import AppConfig, load_config
from meshctl.errors import AccountNotConfirmedError, ArchitectureUnsupportedError
from meshctl.logging import StructuredLogger
from meshctl.models import InstallStatus, ServiceState
from meshctl.providers import ReleaseInstaller, ReleaseProvider, SystemdProvider
from meshctl.service import ServiceReconciler
from meshctl.templates import TemplateEngine
from meshctl.workflow import SetupWorkflow

_REAL_RUN = subprocess.run


class FakeHost:
    """Simulate systemctl and the JSON helper; everything else runs for real."""

    def __init__(self, *, active: bool = False, loaded: bool = False) -> None:
        self.active = active
        self.loaded = loaded
        self.environment = ""
        self.systemctl: list[str] = []

    def run(self, cmd: Sequence[str], *args: Any, **kwargs: Any) -> Any:
        program = os.path.basename(cmd[0])
        if program == "jq":
            return fake_jq_run(cmd, *args, **kwargs)
        if program == "systemctl":
            return self._systemctl(list(cmd[1:]))
        return _REAL_RUN(cmd, *args, **kwargs)

    def _systemctl(self, words: list[str]) -> subprocess.CompletedProcess[str]:
        command = words[0]
        self.systemctl.append(command)
        stdout = ""
        returncode = 0
        if command == "is-active":
            returncode = 0 if self.active else 3
        elif command == "show" and "LoadState" in words:
            stdout = "loaded\n" if self.loaded else "not-found\n"
        elif command == "show" and "Environment" in words:
            stdout = f"Environment={self.environment}\n"
        elif command == "stop":
            self.active = False
        elif command == "start":
            self.active = True
            self.loaded = True
        return subprocess.CompletedProcess(["systemctl", *words], returncode, stdout, "")


class FakePackages:
    """Pretend the JSON helper is installed."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.install_flags: list[bool] = []

    def ensure_command(
        self, binary: str, package: str | None = None, *, install: bool = True
    ) -> str:
        self.calls.append(binary)
        self.install_flags.append(install)
        return f"/usr/bin/{binary}"


class ScriptedPrompter:
    """Answer prompts from fixed tables."""

    def __init__(self, confirms: dict[str, bool], answers: dict[str, str]) -> None:
        self.confirms = confirms
        self.answers = answers
        self.questions: list[str] = []

    def notify(self, message: str) -> None:
        pass

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        return self.confirms[question]

    def ask(self, question: str, *, hide_input: bool = False) -> str:
        self.questions.append(question)
        return self.answers[question]


def _config(tmp_path: Path) -> AppConfig:
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "install_root": str(tmp_path / "blockmesh"),
            "logs_dir": str(tmp_path / "logs"),
            "systemd": {"unit_dir": str(tmp_path / "systemd"), "use_sudo": False},
        },
    )


def _archive_bytes(tmp_path: Path, tag: str) -> bytes:
    archive = make_archive(
        tmp_path / "dist" / f"{tag}.tar.gz",
        {"blockmesh-cli": f"#!/bin/sh\necho {tag}\n".encode()},
        executable=("blockmesh-cli",),
    )
    return archive.read_bytes()


def _metadata(tag: str) -> FakeResponse:
    return FakeResponse(json.dumps({"tag_name": tag}))


def _workflow(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    host: FakeHost,
    session: FakeSession,
    *,
    arch: str = "x86_64",
) -> tuple[SetupWorkflow, FakePackages, list[float]]:
    config = _config(tmp_path)
    (tmp_path / "systemd").mkdir(exist_ok=True)
    monkeypatch.setattr(subprocess, "run", host.run)
    sleeps: list[float] = []
    packages = FakePackages()
    releases = ReleaseProvider(
        release=config.release,
        retry=config.retry,
        session=session,  # type: ignore[arg-type]
        sleep=sleeps.append,
    )
    installer = ReleaseInstaller(
        install_root=config.install_root,
        binary_name=config.release.binary_name,
        asset_name=config.release.asset_name,
        fetcher=releases,
    )
    systemd = SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        service_name=config.service_name,
        systemd_dir=config.systemd.unit_dir,
        use_sudo=False,
    )
    workflow = SetupWorkflow(
        config=config,
        packages=packages,  # type: ignore[arg-type]
        releases=releases,
        installer=installer,
        service=ServiceReconciler(systemd=systemd, settle_seconds=5.0, sleep=sleeps.append),
        architecture=lambda: arch,
    )
    return workflow, packages, sleeps


def _preinstall(root: Path, tag: str) -> None:
    release = root / f"blockmesh_{tag}"
    release.mkdir(parents=True)
    binary = release / "blockmesh-cli"
    binary.write_text("#!/bin/sh\n", encoding="utf-8")
    binary.chmod(0o755)
    (root / "target").symlink_to(release.name, target_is_directory=True)


def test_fresh_host_installs_and_starts_service(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    host = FakeHost()
    session = FakeSession(
        [_metadata("v0.0.400"), FakeResponse(content=_archive_bytes(tmp_path, "v0.0.400"))]
    )
    workflow, packages, _ = _workflow(tmp_path, monkeypatch, host, session)
    prompter = ScriptedPrompter(
        confirms={"Have you created an account?": True},
        answers={"Enter your email": "user@example.com", "Enter your password": "pw"},
    )
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("setup") as op:
        result = workflow.run(prompter, op=op)
        op.success("done")

    root = tmp_path / "blockmesh"
    assert packages.calls == ["jq"]
    assert session.calls[1].endswith(
        "/releases/download/v0.0.400/blockmesh-cli-x86_64-unknown-linux-gnu.tar.gz"
    )
    assert result.version == "v0.0.400"
    assert result.install.status is InstallStatus.INSTALLED
    assert result.previous_state is ServiceState.ABSENT
    assert os.readlink(root / "target") == "blockmesh_v0.0.400"
    assert sorted(p.name for p in root.iterdir()) == ["blockmesh_v0.0.400", "target"]

    unit = (tmp_path / "systemd" / "blockmesh.service").read_text(encoding="utf-8")
    assert f'ExecStart="{root / "target" / "blockmesh-cli"}" "login"' in unit
    assert 'Environment="EMAIL=user@example.com"' in unit
    assert f'WorkingDirectory="{root / "target"}"' in unit
    assert host.systemctl[-3:] == ["daemon-reload", "enable", "start"]
    assert "stop" not in host.systemctl

    record = json.loads(logger.path.read_text(encoding="utf-8").splitlines()[0])
    steps = [step["name"] for step in record["steps"]]
    assert steps == [
        "architecture.check",
        "dependencies.ensure",
        "release.resolve",
        "install.apply",
        "service.inspect",
        "credentials.negotiate",
        "service.reconcile",
    ]


def test_current_version_skips_download_and_keeps_credentials(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _preinstall(tmp_path / "blockmesh", "v0.0.321")
    host = FakeHost(active=True, loaded=True)
    host.environment = "EMAIL=old@example.com PASSWORD=old-pass"
    session = FakeSession([_metadata("v0.0.321")])
    workflow, _, sleeps = _workflow(tmp_path, monkeypatch, host, session)
    prompter = ScriptedPrompter(
        confirms={
            "Do you want to change your email?": False,
            "Do you want to change your password?": False,
        },
        answers={},
    )

    result = workflow.run(prompter)

    assert session.calls == [workflow.config.release.metadata_url]
    assert result.install.status is InstallStatus.SKIPPED
    # Unit files edited by hand are picked up before the service is inspected.
    assert host.systemctl[0] == "daemon-reload"
    assert host.systemctl.index("daemon-reload") < host.systemctl.index("show")
    assert result.previous_state is ServiceState.RUNNING
    assert sleeps == [5.0]
    stop_index = host.systemctl.index("stop")
    assert host.systemctl[stop_index:] == ["stop", "daemon-reload", "enable", "start"]

    unit = (tmp_path / "systemd" / "blockmesh.service").read_text(encoding="utf-8")
    assert '"--email" "old@example.com" "--password" "old-pass"' in unit
    assert os.readlink(tmp_path / "blockmesh" / "target") == "blockmesh_v0.0.321"


def test_unsupported_architecture_fails_before_any_side_effect(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    host = FakeHost()
    session = FakeSession([])
    workflow, packages, _ = _workflow(tmp_path, monkeypatch, host, session, arch="aarch64")
    prompter = ScriptedPrompter(confirms={}, answers={})

    with pytest.raises(ArchitectureUnsupportedError, match="aarch64"):
        workflow.run(prompter)

    assert packages.calls == []
    assert session.calls == []
    assert host.systemctl == []
    assert not (tmp_path / "blockmesh").exists()


def test_declined_account_leaves_service_untouched(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _preinstall(tmp_path / "blockmesh", "v0.0.400")
    host = FakeHost()
    session = FakeSession([_metadata("v0.0.400")])
    workflow, _, _ = _workflow(tmp_path, monkeypatch, host, session)
    prompter = ScriptedPrompter(confirms={"Have you created an account?": False}, answers={})

    with pytest.raises(AccountNotConfirmedError):
        workflow.run(prompter)

    assert not (tmp_path / "systemd" / "blockmesh.service").exists()
    assert host.systemctl[0] == "daemon-reload"
    assert "enable" not in host.systemctl
    assert "start" not in host.systemctl


def test_dry_run_reports_pending_changes_only(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    host = FakeHost()
    session = FakeSession([_metadata("v0.0.400")])
    workflow, _, _ = _workflow(tmp_path, monkeypatch, host, session)
    prompter = ScriptedPrompter(
        confirms={"Have you created an account?": True},
        answers={"Enter your email": "user@example.com", "Enter your password": "pw"},
    )

    result = workflow.run(prompter, dry_run=True)

    assert result.dry_run is True
    assert result.install.status is InstallStatus.INSTALLED
    assert result.descriptor is not None
    assert result.descriptor.exec_path == tmp_path / "blockmesh" / "target" / "blockmesh-cli"
    assert len(session.calls) == 1
    assert not (tmp_path / "blockmesh").exists()
    assert not (tmp_path / "systemd" / "blockmesh.service").exists()
    assert "daemon-reload" not in host.systemctl


def test_check_updates_reports_installed_and_latest(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _preinstall(tmp_path / "blockmesh", "v0.0.321")
    session = FakeSession([_metadata("v0.0.400")])
    workflow, packages, _ = _workflow(tmp_path, monkeypatch, FakeHost(), session)

    assert workflow.check_updates() == ("v0.0.321", "v0.0.400")
    assert packages.install_flags == [False]
