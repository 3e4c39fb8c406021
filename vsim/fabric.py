"""Virtual switch fabric: one Linux bridge per session plus its guest ports."""

from __future__ import annotations

import json
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from ipaddress import IPv4Interface
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from vsim.constants import IFNAME_MAX, STATE_DIR
from vsim.exceptions import ManagerError, NotFound, ResourceConflict, TopologyError
from vsim.models import FabricHandle, FabricSpec, LinkSpec, PortHandle
from vsim.services import DnsmasqService
from vsim.utils import check_cancelled, deterministic_mac, ensure_directory, interface_exists, log, run


@dataclass
class _FabricState:
    handle: FabricHandle
    dhcp: DnsmasqService
    ports: Dict[str, PortHandle] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


# Fabrics are host-wide resources; one registry per controller process.
_FABRICS: Dict[str, Optional[_FabricState]] = {}
_FABRICS_GUARD = threading.Lock()


def port_device_name(bridge: str, index: int) -> str:
    name = f"{bridge}p{index}"
    if len(name) > IFNAME_MAX:
        raise TopologyError(
            f"Port device name '{name}' exceeds {IFNAME_MAX} characters; use a shorter fabric name"
        )
    return name


def port_mac(fabric: str, node_id: str) -> str:
    return deterministic_mac(f"{fabric}:{node_id}")


def _ip(args: List[str]) -> None:
    try:
        run(["ip", *args], capture_output=True)
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise ManagerError(f"ip {' '.join(args)} failed: {stderr or exc}") from exc
    except FileNotFoundError as exc:
        raise ManagerError("iproute2 'ip' command not found") from exc


class VirtualSwitchFabric:
    """Creates and tears down session fabrics and their per-guest ports."""

    def __init__(self, state_root: Path = STATE_DIR) -> None:
        self.state_root = state_root

    def _state(self, fabric: FabricHandle) -> _FabricState:
        with _FABRICS_GUARD:
            state = _FABRICS.get(fabric.name)
        if state is None:
            raise NotFound(f"Fabric {fabric.name} is not managed by this controller")
        return state

    def create_fabric(self, spec: FabricSpec, cancel: Optional[threading.Event] = None) -> FabricHandle:
        """Allocate the bridge and its DHCP/DNS responder, or leave nothing behind."""
        with _FABRICS_GUARD:
            if spec.name in _FABRICS:
                raise ResourceConflict(f"Fabric {spec.name} already exists in this session")
            if interface_exists(spec.name):
                raise ResourceConflict(f"Network device {spec.name} already exists on this host")
            _FABRICS[spec.name] = None  # reserve the name

        state_dir = self.state_root / "fabrics" / spec.name
        undo: List[Callable[[], None]] = []
        dhcp = DnsmasqService(
            interface=spec.name,
            state_dir=state_dir,
            gateway=spec.gateway,
            dhcp_range=spec.dhcp_range,
            domain=spec.domain,
        )
        try:
            ensure_directory(state_dir)
            undo.append(lambda: shutil.rmtree(state_dir, ignore_errors=True))
            check_cancelled(cancel, f"creating fabric {spec.name}")

            _ip(["link", "add", "name", spec.name, "type", "bridge"])
            undo.append(lambda: self._delete_link(spec.name))
            gateway = IPv4Interface(f"{spec.gateway}/{spec.subnet.prefixlen}")
            _ip(["addr", "add", str(gateway), "dev", spec.name])
            _ip(["link", "set", spec.name, "up"])
            check_cancelled(cancel, f"creating fabric {spec.name}")

            dhcp.start()
            undo.append(dhcp.stop)
            check_cancelled(cancel, f"creating fabric {spec.name}")
        except BaseException:
            log("WARN", f"Rolling back partially created fabric {spec.name}")
            for step in reversed(undo):
                try:
                    step()
                except ManagerError as exc:
                    log("WARN", f"Rollback step failed: {exc}")
            with _FABRICS_GUARD:
                _FABRICS.pop(spec.name, None)
            raise

        handle = FabricHandle(
            name=spec.name,
            subnet=spec.subnet,
            gateway=spec.gateway,
            dhcp_range=spec.dhcp_range,
            domain=spec.domain,
            state_dir=state_dir,
            dhcp_pid=dhcp.pid,
        )
        with _FABRICS_GUARD:
            _FABRICS[spec.name] = _FabricState(handle=handle, dhcp=dhcp)
        log("SUCCESS", f"Fabric {spec.name} up ({spec.gateway}/{spec.subnet.prefixlen})")
        return handle

    def adopt(self, handle: FabricHandle, ports: Iterable[PortHandle] = ()) -> None:
        """Register a fabric created by an earlier controller process."""
        with _FABRICS_GUARD:
            if _FABRICS.get(handle.name) is not None:
                return
        dhcp = DnsmasqService(
            interface=handle.name,
            state_dir=handle.state_dir,
            gateway=handle.gateway,
            dhcp_range=handle.dhcp_range,
            domain=handle.domain,
        )
        if handle.dhcp_pid is not None:
            dhcp.adopt(handle.dhcp_pid)
        state = _FabricState(handle=handle, dhcp=dhcp)
        present = set(self.list_ports(handle))
        for port in ports:
            if port.device in present:
                state.ports[port.link_id] = port
        with _FABRICS_GUARD:
            _FABRICS[handle.name] = state

    def exists(self, fabric: FabricHandle) -> bool:
        return interface_exists(fabric.name)

    def attach_port(
        self,
        fabric: FabricHandle,
        link: LinkSpec,
        endpoint: Optional[IPv4Interface] = None,
    ) -> PortHandle:
        """Create the tap for ``link`` and enslave it to the bridge (idempotent per link)."""
        state = self._state(fabric)
        with state.lock:
            existing = state.ports.get(link.node_id)
            if existing is not None:
                return existing
            for other in state.ports.values():
                if other.index == link.port:
                    raise ResourceConflict(
                        f"Port {link.port} on {fabric.name} is already attached to {other.link_id}"
                    )
            device = port_device_name(fabric.name, link.port)
            mac = port_mac(fabric.name, link.node_id)
            if interface_exists(device):
                if device not in self.list_ports(fabric):
                    raise ResourceConflict(f"Network device {device} already exists outside fabric {fabric.name}")
                log("INFO", f"Reusing existing port {device} for {link.node_id}")
            else:
                _ip(["tuntap", "add", "dev", device, "mode", "tap"])
                try:
                    _ip(["link", "set", device, "master", fabric.name])
                    _ip(["link", "set", device, "up"])
                except ManagerError:
                    self._delete_link(device)
                    raise
            port = PortHandle(fabric=fabric.name, link_id=link.node_id, index=link.port, device=device, mac=mac)
            state.ports[link.node_id] = port
        if endpoint is not None:
            state.dhcp.add_host(mac, link.node_id, endpoint.ip)
        log("INFO", f"Attached {link.node_id} to {fabric.name} port {link.port} ({device}, {mac})")
        return port

    def detach_port(self, fabric: FabricHandle, port: PortHandle) -> None:
        """Remove the port's device; an already-removed device is only logged."""
        with _FABRICS_GUARD:
            state = _FABRICS.get(fabric.name)
        if state is not None:
            with state.lock:
                state.ports.pop(port.link_id, None)
            state.dhcp.remove_host(port.mac)
        if not self._delete_link(port.device):
            log("WARN", f"Port {port.device} was already removed")
        else:
            log("INFO", f"Detached {port.link_id} from {fabric.name} ({port.device})")

    def ports(self, fabric: FabricHandle) -> Dict[str, PortHandle]:
        state = self._state(fabric)
        with state.lock:
            return dict(state.ports)

    def port_for(self, fabric: FabricHandle, node_id: str) -> Optional[PortHandle]:
        return self.ports(fabric).get(node_id)

    def list_ports(self, fabric: FabricHandle) -> List[str]:
        """Enumerate devices currently enslaved to the bridge."""
        result = run(
            ["ip", "-j", "link", "show", "master", fabric.name],
            check=False,
            capture_output=True,
        )
        if result.returncode != 0 or not result.stdout.strip():
            return []
        try:
            entries = json.loads(result.stdout)
        except json.JSONDecodeError:
            log("WARN", f"Unparseable port listing for {fabric.name}")
            return []
        return sorted(entry["ifname"] for entry in entries if "ifname" in entry)

    def destroy_fabric(self, fabric: FabricHandle) -> None:
        """Tear down ports, responder, bridge and lease table; tolerant of missing pieces."""
        with _FABRICS_GUARD:
            state = _FABRICS.pop(fabric.name, None)
        if state is not None:
            for port in list(state.ports.values()):
                if not self._delete_link(port.device):
                    log("DEBUG", f"Port {port.device} already gone")
            state.ports.clear()
            state.dhcp.stop()
        if not self._delete_link(fabric.name):
            log("WARN", f"Bridge {fabric.name} was already removed")
        shutil.rmtree(fabric.state_dir, ignore_errors=True)
        log("SUCCESS", f"Fabric {fabric.name} removed")

    def _delete_link(self, device: str) -> bool:
        result = run(["ip", "link", "del", device], check=False, capture_output=True)
        if result.returncode == 0:
            return True
        stderr = (result.stderr or "").lower()
        if "cannot find device" in stderr or "does not exist" in stderr:
            return False
        log("WARN", f"Failed to delete {device}: {(result.stderr or '').strip()}")
        return False
