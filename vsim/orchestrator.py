"""Session orchestrator: topology -> fabric -> descriptors -> running guests."""

from __future__ import annotations

import shutil
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vsim.config import load_topology
from vsim.console import ConsoleRegistry
from vsim.descriptor import HostCapabilities, compile_descriptor, wants_emulation
from vsim.exceptions import Cancelled, ManagerError, NotFound, ResourceConflict
from vsim.fabric import VirtualSwitchFabric, port_device_name, port_mac
from vsim.lifecycle import GuestLifecycleManager
from vsim.models import (
    DomainDescriptor,
    DomainState,
    FabricHandle,
    GuestDomain,
    LinkSpec,
    NodeSpec,
    NodeStatus,
    PortHandle,
    Settings,
    Topology,
)
from vsim.profiles import ImpairmentEngine
from vsim.session import SessionRecord, SessionStore
from vsim.utils import ensure_directory, log, run


def planned_port(topology: Topology, link: LinkSpec) -> PortHandle:
    """The port a link will get, without touching the host."""
    return PortHandle(
        fabric=topology.fabric.name,
        link_id=link.node_id,
        index=link.port,
        device=port_device_name(topology.fabric.name, link.port),
        mac=port_mac(topology.fabric.name, link.node_id),
    )


class SessionOrchestrator:
    """Brings a topology up, answers status/exec/profile requests, tears it down.

    Fabric failures abort ``up`` before any guest exists; guest failures are
    recorded per node and reported through :meth:`status`.
    """

    def __init__(
        self,
        settings: Settings,
        hypervisor,
        fabric: Optional[VirtualSwitchFabric] = None,
        host: Optional[HostCapabilities] = None,
        consoles: Optional[ConsoleRegistry] = None,
    ) -> None:
        self.settings = settings
        self.hypervisor = hypervisor
        self.fabric = fabric or VirtualSwitchFabric(settings.state_dir)
        self._host = host
        self.consoles = consoles or ConsoleRegistry(
            handshake_timeout=settings.handshake_timeout,
            exec_timeout=settings.exec_timeout,
        )
        self.lifecycle = GuestLifecycleManager(
            hypervisor,
            release_port=self._release_port,
            on_power_off=self.consoles.invalidate,
            boot_timeout=settings.boot_timeout,
            shutdown_timeout=settings.shutdown_timeout,
        )
        self.store = SessionStore(settings.state_dir)
        self.topology: Optional[Topology] = None
        self.fabric_handle: Optional[FabricHandle] = None
        self.engine = ImpairmentEngine()
        self.domains: Dict[str, GuestDomain] = {}
        self.ports: Dict[str, PortHandle] = {}
        self.errors: Dict[str, str] = {}
        self._lock = threading.RLock()

    @property
    def host(self) -> HostCapabilities:
        if self._host is None:
            self._host = HostCapabilities.detect()
        return self._host

    @property
    def active(self) -> bool:
        return self.fabric_handle is not None

    # -- session ------------------------------------------------------------

    def up(self, topology: Topology, cancel: Optional[threading.Event] = None) -> Dict[str, NodeStatus]:
        if self.active:
            raise ResourceConflict("A session is already up in this controller")
        if self.store.exists():
            raise ResourceConflict(f"A session is already recorded at {self.store.path}; run 'vsim down' first")

        self.hypervisor.connect()
        self.topology = topology
        self.engine = ImpairmentEngine(topology.profiles)
        log("INFO", f"Bringing up {len(topology.nodes)} node(s) on fabric {topology.fabric.name}")
        try:
            self.fabric_handle = self.fabric.create_fabric(topology.fabric, cancel)
        except BaseException:
            self.topology = None
            raise
        self._save()

        links = {link.node_id: link for link in topology.links}
        with ThreadPoolExecutor(max_workers=self.settings.parallel, thread_name_prefix="vsim-up") as pool:
            futures = {
                node.id: pool.submit(self._bring_up, node, links[node.id], cancel) for node in topology.nodes
            }
            for node_id, future in futures.items():
                try:
                    future.result()
                except ManagerError as exc:
                    with self._lock:
                        self.errors[node_id] = str(exc)
                    log("ERROR", f"{node_id}: {exc}")
                except Exception as exc:
                    with self._lock:
                        self.errors[node_id] = f"Unexpected error: {exc}"
                    log("ERROR", f"{node_id}: unexpected error during bring-up: {exc}")
        self._save()

        if cancel is not None and cancel.is_set():
            log("WARN", "Bring-up cancelled; tearing the session down")
            self.down()
            raise Cancelled("Cancelled while bringing the session up")

        failed = sorted(self.errors)
        if failed:
            log("WARN", f"Session up with failures on: {', '.join(failed)}")
        else:
            log("SUCCESS", f"Session up: {', '.join(node.id for node in topology.nodes)}")
        return self.status()

    def _bring_up(self, node: NodeSpec, link: LinkSpec, cancel: Optional[threading.Event]) -> None:
        assert self.topology is not None and self.fabric_handle is not None
        port = self.fabric.attach_port(self.fabric_handle, link, node.network_endpoint)
        with self._lock:
            self.ports[node.id] = port
        self.engine.apply(port, link.profile or self.topology.default_profile)

        descriptor = compile_descriptor(node, port, node.disk_image_ref, self.host, self.settings.state_dir)
        if not Path(descriptor.disk_path).exists():
            raise ManagerError(f"Disk image not found: {descriptor.disk_path}")
        self._prepare_storage(descriptor)
        ensure_directory(Path(descriptor.console_path).parent)

        domain = self.lifecycle.define(descriptor, port)
        with self._lock:
            self.domains[node.id] = domain
        if domain.state is DomainState.RUNNING:
            log("INFO", f"{node.id} is already running")
            self.consoles.mark_resumed(domain.name)
            return
        self.lifecycle.start(domain, ready=self.consoles.probe, cancel=cancel)

    def _prepare_storage(self, descriptor: DomainDescriptor) -> None:
        if descriptor.nvram_path and descriptor.nvram_template:
            nvram = Path(descriptor.nvram_path)
            template = Path(descriptor.nvram_template)
            if not nvram.exists():
                if not template.exists():
                    raise ManagerError(f"Firmware variable template not found at {template}")
                try:
                    ensure_directory(nvram.parent)
                    shutil.copy2(template, nvram)
                except OSError as exc:
                    raise ManagerError(f"Failed to create NVRAM {nvram}: {exc}") from exc
        if descriptor.extra_disk_path:
            extra = Path(descriptor.extra_disk_path)
            if not extra.exists():
                try:
                    ensure_directory(extra.parent)
                except OSError as exc:
                    raise ManagerError(f"Failed to create {extra.parent}: {exc}") from exc
                log("INFO", f"Creating data disk {extra} ({descriptor.extra_disk_gib}G)")
                try:
                    run(["qemu-img", "create", "-f", "qcow2", str(extra), f"{descriptor.extra_disk_gib}G"], capture_output=True)
                except FileNotFoundError as exc:
                    raise ManagerError("qemu-img is required for data disks but was not found") from exc
                except subprocess.CalledProcessError as exc:
                    detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
                    raise ManagerError(f"qemu-img failed to create {extra}: {detail}") from exc

    def down(self) -> None:
        """Destroy every guest, then the fabric; tolerant of anything already gone."""
        if not self.active and not self._try_resume():
            log("INFO", "No active session")
            return
        assert self.fabric_handle is not None
        with self._lock:
            domains = [domain for domain in self.domains.values() if domain.state is not DomainState.DESTROYED]
        with ThreadPoolExecutor(max_workers=self.settings.parallel, thread_name_prefix="vsim-down") as pool:
            for future in [pool.submit(self.lifecycle.destroy, domain) for domain in domains]:
                try:
                    future.result()
                except NotFound:
                    continue
                except ManagerError as exc:
                    log("WARN", f"Destroy failed: {exc}")
        self.consoles.close_all()
        self.fabric.destroy_fabric(self.fabric_handle)
        self.store.clear()
        self.fabric_handle = None
        self.topology = None
        self.domains.clear()
        self.ports.clear()
        self.errors.clear()
        self.engine = ImpairmentEngine()
        log("SUCCESS", "Session down")

    def resume(self) -> None:
        """Rebuild in-memory state from the session record of an earlier process."""
        if self.active:
            return
        record = self.store.load()
        topology = load_topology(record.topology)
        self.hypervisor.connect()
        self.topology = topology
        self.engine = ImpairmentEngine(topology.profiles)
        self.fabric.adopt(record.fabric, record.ports.values())
        self.fabric_handle = record.fabric
        self.ports = dict(record.ports)
        self.errors = dict(record.errors)
        for node_id, port in self.ports.items():
            self.engine.restore(port, record.profiles.get(node_id, topology.default_profile))

        for node in topology.nodes:
            port = self.ports.get(node.id) or planned_port(topology, topology.link_for(node.id))
            try:
                descriptor = compile_descriptor(node, port, node.disk_image_ref, self.host, self.settings.state_dir)
            except ManagerError as exc:
                self.errors.setdefault(node.id, str(exc))
                continue
            domain = GuestDomain(node_id=node.id, descriptor=descriptor, port=self.ports.get(node.id))
            if node.id in record.destroyed:
                domain.state = DomainState.DESTROYED
            else:
                try:
                    domain.state = self.hypervisor.state(domain.name)
                except NotFound:
                    # Never defined, or undefined behind our back.
                    continue
                if domain.state is DomainState.RUNNING:
                    self.consoles.mark_resumed(domain.name)
            self.domains[node.id] = domain
        log("DEBUG", f"Resumed session on fabric {record.fabric.name}")

    def _try_resume(self) -> bool:
        if not self.store.exists():
            return False
        self.resume()
        return True

    def _ensure_session(self) -> Topology:
        if not self.active:
            self.resume()
        assert self.topology is not None
        return self.topology

    def close(self) -> None:
        self.consoles.close_all()
        self.hypervisor.close()

    # -- per node -----------------------------------------------------------

    def _node_domain(self, node_id: str) -> GuestDomain:
        topology = self._ensure_session()
        try:
            topology.node(node_id)
        except KeyError:
            raise NotFound(f"Unknown node '{node_id}'") from None
        with self._lock:
            domain = self.domains.get(node_id)
        if domain is None:
            reason = self.errors.get(node_id, "it was never defined")
            raise NotFound(f"Node '{node_id}' has no domain: {reason}")
        return domain

    def _node_port(self, node_id: str) -> PortHandle:
        topology = self._ensure_session()
        try:
            topology.node(node_id)
        except KeyError:
            raise NotFound(f"Unknown node '{node_id}'") from None
        with self._lock:
            port = self.ports.get(node_id)
        if port is None:
            raise NotFound(f"Node '{node_id}' has no fabric port")
        return port

    def _release_port(self, port: PortHandle) -> None:
        if self.fabric_handle is not None:
            self.fabric.detach_port(self.fabric_handle, port)
        self.engine.forget(port)
        with self._lock:
            if self.ports.get(port.link_id) == port:
                del self.ports[port.link_id]

    def start_node(self, node_id: str, cancel: Optional[threading.Event] = None) -> None:
        domain = self._node_domain(node_id)
        self.lifecycle.start(domain, ready=self.consoles.probe, cancel=cancel)
        with self._lock:
            self.errors.pop(node_id, None)
        self._save()

    def stop_node(self, node_id: str, graceful: bool = True, cancel: Optional[threading.Event] = None) -> None:
        self.lifecycle.stop(self._node_domain(node_id), graceful=graceful, cancel=cancel)

    def destroy_node(self, node_id: str) -> None:
        self.lifecycle.destroy(self._node_domain(node_id))
        self._save()

    def set_profile(self, node_id: str, profile: str) -> str:
        """Replace the shaping on one node's port; the latest write wins."""
        name = self.engine.apply(self._node_port(node_id), profile)
        self._save()
        return name

    def set_profile_all(self, profile: str) -> Dict[str, str]:
        """Apply one profile to every attached port (fabric-wide switch)."""
        self._ensure_session()
        resolved = self.engine.resolve(profile)
        with self._lock:
            ports = dict(self.ports)
        applied: Dict[str, str] = {}
        try:
            for node_id, port in sorted(ports.items()):
                applied[node_id] = self.engine.apply(port, resolved)
        finally:
            self._save()
        return applied

    def exec(
        self,
        node_id: str,
        command: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[str, int]:
        domain = self._node_domain(node_id)
        state = self.lifecycle.status(domain)
        if state is not DomainState.RUNNING:
            raise ManagerError(f"Node '{node_id}' is not running ({state.value})")
        return self.consoles.exec(domain, command, timeout=timeout, cancel=cancel)

    def status(self) -> Dict[str, NodeStatus]:
        topology = self._ensure_session()
        result: Dict[str, NodeStatus] = {}
        for node in topology.nodes:
            with self._lock:
                domain = self.domains.get(node.id)
                port = self.ports.get(node.id)
                error = self.errors.get(node.id)
            profile = self.engine.current_profile(port) if port is not None else topology.default_profile
            if domain is None:
                result[node.id] = NodeStatus(
                    node_id=node.id,
                    state=DomainState.UNDEFINED,
                    profile=profile,
                    emulated=wants_emulation(node, self.host),
                    error=error,
                )
                continue
            try:
                state: Optional[DomainState] = self.lifecycle.status(domain)
            except NotFound:
                state = None
            except ManagerError as exc:
                state, error = None, str(exc)
            result[node.id] = NodeStatus(
                node_id=node.id,
                state=state,
                profile=profile if state is not None else topology.default_profile,
                console=self.consoles.state(domain.name) if state is DomainState.RUNNING else None,
                emulated=domain.descriptor.emulated,
                error=error,
            )
        return result

    def render(self, topology: Topology) -> List[DomainDescriptor]:
        """Compile every node's descriptor without touching the host."""
        links = {link.node_id: link for link in topology.links}
        return [
            compile_descriptor(
                node,
                planned_port(topology, links[node.id]),
                node.disk_image_ref,
                self.host,
                self.settings.state_dir,
            )
            for node in topology.nodes
        ]

    def _save(self) -> None:
        if self.topology is None or self.fabric_handle is None or self.topology.source is None:
            return
        with self._lock:
            record = SessionRecord(
                topology=self.topology.source,
                fabric=self.fabric_handle,
                ports=dict(self.ports),
                profiles={node_id: self.engine.current_profile(port) for node_id, port in self.ports.items()},
                errors=dict(self.errors),
                destroyed=[
                    node_id for node_id, domain in self.domains.items() if domain.state is DomainState.DESTROYED
                ],
            )
        self.store.save(record)
