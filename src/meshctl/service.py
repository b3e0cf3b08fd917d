"""Reconcile the running service with a freshly built descriptor."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .models import ServiceDescriptor, ServiceSnapshot, ServiceState
from .providers.systemd import SystemdProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceReconciler:
    """Drive the unit through stop, rewrite, reload, enable and start.

    States are ``ABSENT``, ``STOPPED`` and ``RUNNING``. A running service is
    always stopped and given ``settle_seconds`` to exit before its unit file
    is overwritten. Any failing supervisor call raises
    :class:`~meshctl.providers.systemd.SystemdError` and nothing is retried.
    """

    systemd: SystemdProvider
    settle_seconds: float = 5.0
    sleep: Callable[[float], None] = time.sleep

    def state(self) -> ServiceState:
        """Return the current state of the unit."""
        if self.systemd.is_active():
            return ServiceState.RUNNING
        if self.systemd.exists():
            return ServiceState.STOPPED
        return ServiceState.ABSENT

    def inspect(self, *, reload: bool = False) -> ServiceSnapshot:
        """Return the state and stored environment of the unit.

        With *reload* systemd re-reads unit files first, so a unit edited or
        added by hand is seen as it is on disk.
        """
        if reload:
            self.systemd.daemon_reload()
        state = self.state()
        environment = self.systemd.show_environment() if state is not ServiceState.ABSENT else {}
        return ServiceSnapshot(state=state, environment=environment)

    def reconcile(self, descriptor: ServiceDescriptor) -> ServiceState:
        """Apply *descriptor* and return the state observed before the change."""
        self.systemd.daemon_reload()

        previous = self.state()
        if previous is ServiceState.RUNNING:
            logger.info("Stopping %s before rewriting its unit.", self.systemd.unit_name())
            self.systemd.stop()
            self.sleep(self.settle_seconds)

        self.systemd.render_unit(descriptor.template_context())
        self.systemd.daemon_reload()
        self.systemd.enable()
        self.systemd.start()
        logger.info("%s is now running.", self.systemd.unit_name())
        return previous


__all__ = ["ServiceReconciler"]
