"""The update-and-reconcile workflow.

Steps run strictly in order and each one either completes or raises a
:class:`~meshctl.errors.SetupError`:

1. reject unsupported CPU architectures (before any network access);
2. make sure the JSON helper tool is installed;
3. resolve the latest release tag;
4. install it unless it is already deployed;
5. inspect the service and negotiate credentials;
6. rewrite and restart the service.

Following the logs is left to the caller via :meth:`SetupWorkflow.follow`.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .credentials import Prompter, negotiate
from .logging import OperationScope
from .models import InstallStatus, ServiceDescriptor, ServiceState, WorkflowResult
from .providers import (
    PackageProvider,
    ReleaseInstaller,
    ReleaseProvider,
    SystemdProvider,
    detect_architecture,
)
from .service import ServiceReconciler
from .templates import TemplateEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SetupWorkflow:
    """Wire the providers together and run them in sequence."""

    config: AppConfig
    packages: PackageProvider
    releases: ReleaseProvider
    installer: ReleaseInstaller
    service: ServiceReconciler
    architecture: Callable[[], str] = detect_architecture

    @classmethod
    def from_config(cls, config: AppConfig) -> SetupWorkflow:
        """Build a workflow backed by the real host providers."""
        templates = TemplateEngine.with_overrides(config.templates_dir)
        packages = PackageProvider(
            package_manager_bin=config.dependencies.package_manager_bin,
            auto_install=config.dependencies.auto_install,
            use_sudo=config.systemd.use_sudo,
        )
        releases = ReleaseProvider(
            release=config.release,
            retry=config.retry,
            json_helper=config.dependencies.json_helper,
        )
        installer = ReleaseInstaller(
            install_root=config.install_root,
            binary_name=config.release.binary_name,
            asset_name=config.release.asset_name,
            fetcher=releases,
        )
        systemd = SystemdProvider(
            templates=templates,
            service_name=config.service_name,
            systemd_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
            journalctl_bin=config.systemd.journalctl_bin,
            use_sudo=config.systemd.use_sudo,
        )
        service = ServiceReconciler(systemd=systemd, settle_seconds=config.systemd.settle_seconds)
        return cls(
            config=config,
            packages=packages,
            releases=releases,
            installer=installer,
            service=service,
        )

    def check_updates(self) -> tuple[str | None, str]:
        """Return ``(installed, latest)`` without changing anything.

        A missing JSON helper is reported, never installed.
        """
        self.releases.check_architecture(self.architecture())
        self._ensure_json_helper(None, install=False)
        latest = self.releases.resolve_latest_version()
        return self.installer.installed_version(), latest

    def run(
        self,
        prompter: Prompter,
        *,
        dry_run: bool = False,
        op: OperationScope | None = None,
    ) -> WorkflowResult:
        """Bring the install and the service up to date."""
        arch = self.architecture()
        self.releases.check_architecture(arch)
        _step(op, "architecture.check", arch)

        self._ensure_json_helper(op)

        latest = self.releases.resolve_latest_version()
        _step(op, "release.resolve", latest)

        url = self.releases.asset_url(latest, arch)
        outcome = self.installer.reconcile(latest, url=url, dry_run=dry_run)
        if outcome.status is InstallStatus.SKIPPED:
            _step(op, "install.skip", f"already current: {latest}")
        else:
            _step(
                op,
                "install.dry-run" if dry_run else "install.apply",
                f"{outcome.previous_version or 'none'} -> {latest}",
            )

        snapshot = self.service.inspect(reload=not dry_run)
        _step(op, "service.inspect", snapshot.state.value)

        credentials = negotiate(
            prompter,
            service_exists=snapshot.exists,
            environment=snapshot.environment,
            register_url=self.config.register_url,
        )
        _step(op, "credentials.negotiate", credentials.email)

        descriptor = ServiceDescriptor.for_agent(
            name=self.config.service_name,
            description=self.config.service_description,
            working_directory=self.installer.target_dir,
            exec_path=self._exec_path(dry_run and outcome.changed),
            credentials=credentials,
        )

        previous_state = snapshot.state
        if dry_run:
            _step(op, "service.dry-run", str(self.service.systemd.unit_path()))
        else:
            previous_state = self.service.reconcile(descriptor)
            _step(
                op,
                "service.reconcile",
                f"{previous_state.value} -> {ServiceState.RUNNING.value}",
            )

        return WorkflowResult(
            version=latest,
            install=outcome,
            descriptor=descriptor,
            previous_state=previous_state,
            dry_run=dry_run,
        )

    def follow(self) -> Iterator[str]:
        """Yield service log lines until interrupted."""
        return self.service.systemd.follow_logs()

    # ------------------------------------------------------------------
    def _ensure_json_helper(self, op: OperationScope | None, *, install: bool = True) -> None:
        deps = self.config.dependencies
        helper = self.packages.ensure_command(
            deps.json_helper, deps.json_helper_package, install=install
        )
        self.releases.json_helper = helper
        _step(op, "dependencies.ensure", helper)

    def _exec_path(self, pending_install: bool) -> Path:
        if pending_install:
            return self.installer.target_dir / self.config.release.binary_name
        return self.installer.binary_path()


def _step(op: OperationScope | None, name: str, detail: str) -> None:
    logger.debug("%s: %s", name, detail)
    if op is not None:
        op.add_step(name, status="success", detail=detail)


__all__ = ["SetupWorkflow"]
