"""Guest lifecycle: define/start/stop/destroy with per-domain serialisation."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from vsim.exceptions import (
    AlreadyRunning,
    Cancelled,
    ConflictingDefinition,
    ConsoleError,
    ManagerError,
    NotFound,
)
from vsim.models import DomainDescriptor, DomainState, GuestDomain, PortHandle
from vsim.utils import check_cancelled, log

# ready(domain, timeout, cancel) blocks until the guest can be driven, or raises.
ReadinessProbe = Callable[[GuestDomain, float, Optional[threading.Event]], None]


class GuestLifecycleManager:
    """Owns the guest domains of a session.

    The in-memory ``GuestDomain.state`` is a cache; :meth:`status` always asks
    the hypervisor. Operations on one domain are serialised by a per-name
    lock, unrelated domains proceed concurrently.
    """

    def __init__(
        self,
        hypervisor,
        release_port: Optional[Callable[[PortHandle], None]] = None,
        on_power_off: Optional[Callable[[str], None]] = None,
        boot_timeout: float = 300.0,
        shutdown_timeout: float = 60.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.hypervisor = hypervisor
        self.release_port = release_port
        self.on_power_off = on_power_off
        self.boot_timeout = boot_timeout
        self.shutdown_timeout = shutdown_timeout
        self.poll_interval = poll_interval
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            if name not in self._locks:
                self._locks[name] = threading.Lock()
            return self._locks[name]

    @staticmethod
    def _ensure_alive(domain: GuestDomain) -> None:
        if domain.state is DomainState.DESTROYED:
            raise NotFound(f"Domain {domain.name} has been destroyed")

    def define(self, descriptor: DomainDescriptor, port: Optional[PortHandle] = None) -> GuestDomain:
        """Undefined -> Defined. Identical re-definition is a no-op."""
        domain = GuestDomain(node_id=descriptor.name, descriptor=descriptor, port=port)
        with self._lock_for(descriptor.name):
            if self.hypervisor.exists(descriptor.name):
                recorded = self.hypervisor.descriptor_digest(descriptor.name)
                if recorded != descriptor.digest:
                    raise ConflictingDefinition(
                        f"Domain {descriptor.name} is already defined with a different descriptor; destroy it first"
                    )
                domain.state = self.hypervisor.state(descriptor.name)
                log("INFO", f"Domain {descriptor.name} already defined")
                return domain
            self.hypervisor.define(descriptor.xml)
            domain.state = DomainState.DEFINED
        log("SUCCESS", f"Defined domain {descriptor.name} ({descriptor.performance_note})")
        return domain

    def start(
        self,
        domain: GuestDomain,
        ready: Optional[ReadinessProbe] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Defined|Stopped -> Running, returning once the readiness probe passes.

        A probe failure is logged and leaves the domain Running; cancellation
        powers the domain back off before :class:`Cancelled` propagates.
        """
        with self._lock_for(domain.name):
            self._ensure_alive(domain)
            state = self._reconcile(domain)
            if state is DomainState.RUNNING:
                raise AlreadyRunning(f"Domain {domain.name} is already running")
            check_cancelled(cancel, f"starting {domain.name}")
            self.hypervisor.create(domain.name)
            domain.state = DomainState.RUNNING
            log("SUCCESS", f"Domain {domain.name} started")
            if ready is None:
                return
            try:
                ready(domain, self.boot_timeout, cancel)
            except Cancelled:
                log("WARN", f"Start of {domain.name} cancelled; powering it off")
                self._power_off(domain)
                raise
            except ConsoleError as exc:
                log("WARN", f"Domain {domain.name} is running but not ready: {exc}")
                return
            log("SUCCESS", f"Domain {domain.name} is ready")

    def stop(
        self,
        domain: GuestDomain,
        graceful: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Running -> Stopped. A graceful stop falls back to power-off after the timeout."""
        with self._lock_for(domain.name):
            self._ensure_alive(domain)
            if self._reconcile(domain) is not DomainState.RUNNING:
                log("INFO", f"Domain {domain.name} is not running ({domain.state.value})")
                return
            if graceful:
                log("INFO", f"Shutting down domain {domain.name}")
                self.hypervisor.shutdown(domain.name)
                deadline = time.time() + self.shutdown_timeout
                while time.time() < deadline:
                    if cancel is not None and cancel.is_set():
                        log("WARN", f"Shutdown of {domain.name} cancelled; forcing power-off")
                        self._power_off(domain)
                        raise Cancelled(f"Cancelled while stopping {domain.name}")
                    if self.hypervisor.state(domain.name) is not DomainState.RUNNING:
                        domain.state = DomainState.STOPPED
                        self._notify_power_off(domain.name)
                        log("SUCCESS", f"Domain {domain.name} stopped")
                        return
                    time.sleep(self.poll_interval)
                log("WARN", f"Domain {domain.name} did not shut down within {int(self.shutdown_timeout)}s; forcing power-off")
            self._power_off(domain)
            log("SUCCESS", f"Domain {domain.name} stopped")

    def destroy(self, domain: GuestDomain) -> None:
        """Any state -> Destroyed. Sub-resource failures are logged, never fatal."""
        with self._lock_for(domain.name):
            self._ensure_alive(domain)
            try:
                self.hypervisor.destroy(domain.name)
            except NotFound:
                log("DEBUG", f"Domain {domain.name} was not defined")
            except ManagerError as exc:
                log("WARN", f"Power-off of {domain.name} failed: {exc}")
            self._notify_power_off(domain.name)
            try:
                self.hypervisor.undefine(domain.name, nvram=domain.descriptor.nvram_path is not None)
            except NotFound:
                log("DEBUG", f"Domain {domain.name} already undefined")
            except ManagerError as exc:
                log("WARN", f"Undefine of {domain.name} failed: {exc}")
            self._remove_file(domain.descriptor.console_path)
            if domain.descriptor.extra_disk_path:
                self._remove_file(domain.descriptor.extra_disk_path)
            domain.state = DomainState.DESTROYED
            # The port goes strictly after the domain that used it.
            if domain.port is not None and self.release_port is not None:
                try:
                    self.release_port(domain.port)
                except ManagerError as exc:
                    log("WARN", f"Releasing port {domain.port.device} of {domain.name} failed: {exc}")
        log("SUCCESS", f"Domain {domain.name} destroyed")

    def status(self, domain: GuestDomain) -> DomainState:
        """Snapshot reconciled from the hypervisor; destroyed or vanished -> NotFound."""
        with self._lock_for(domain.name):
            self._ensure_alive(domain)
            return self._reconcile(domain)

    def _reconcile(self, domain: GuestDomain) -> DomainState:
        domain.state = self.hypervisor.state(domain.name)
        return domain.state

    def _power_off(self, domain: GuestDomain) -> None:
        self.hypervisor.destroy(domain.name)
        domain.state = DomainState.STOPPED
        self._notify_power_off(domain.name)

    def _notify_power_off(self, name: str) -> None:
        if self.on_power_off is not None:
            self.on_power_off(name)

    @staticmethod
    def _remove_file(path: str) -> None:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            log("WARN", f"Failed to remove {path}: {exc}")
