"""Shared test fixtures: in-memory hypervisor and fabric, and a bash-backed guest console."""

from __future__ import annotations

import os
import shutil
import socket
import subprocess
import tempfile
import threading
from ipaddress import IPv4Interface
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock
from xml.etree.ElementTree import fromstring

import pytest

from vsim.config import parse_topology
from vsim.constants import HANDSHAKE_MARKER
from vsim.descriptor import DESCRIPTOR_NS, HostCapabilities
from vsim.exceptions import ManagerError, NotFound, ResourceConflict
from vsim.fabric import port_device_name, port_mac
from vsim.models import DomainState, FabricHandle, FabricSpec, LinkSpec, PortHandle, Settings


class GuestAgent:
    """Unix-socket console backed by a real ``bash --norc``, as the guest agent presents it.

    The marker is sent once per boot, on the first connection only.
    """

    def __init__(self, path: Path, marker: bool = True) -> None:
        self.path = path
        self.marker = marker
        self.connections = 0
        self._procs: List[subprocess.Popen] = []
        self._stop = threading.Event()
        self._server: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "GuestAgent":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            self.path.unlink()
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(self.path))
        server.listen(1)
        server.settimeout(0.1)
        self._server = server
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()
        return self

    def _serve(self) -> None:
        assert self._server is not None
        while not self._stop.is_set():
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(None)
            self.connections += 1
            if self.marker and self.connections == 1:
                conn.sendall(f"{HANDSHAKE_MARKER}\n".encode())
            env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "PS1": ""}
            proc = subprocess.Popen(
                ["bash", "--norc"],
                stdin=conn.fileno(),
                stdout=conn.fileno(),
                stderr=subprocess.DEVNULL,
                env=env,
            )
            self._procs.append(proc)
            conn.close()

    def stop(self) -> None:
        self._stop.set()
        if self._server is not None:
            self._server.close()
        if self._thread is not None:
            self._thread.join(timeout=2)
        for proc in self._procs:
            if proc.poll() is None:
                proc.kill()
            proc.wait(timeout=5)
        if self.path.exists():
            self.path.unlink()


class FakeHypervisor:
    """In-memory stand-in for :class:`vsim.hypervisor.LibvirtHypervisor`.

    ``console_agents`` starts a :class:`GuestAgent` on the domain's console
    socket whenever a domain is created, like QEMU opening the chardev.
    """

    def __init__(self, console_agents: bool = False, marker: bool = True, honour_shutdown: bool = True) -> None:
        self.console_agents = console_agents
        self.marker = marker
        self.honour_shutdown = honour_shutdown
        self.domains: Dict[str, Dict] = {}
        self.agents: Dict[str, GuestAgent] = {}
        self.calls: List[tuple] = []
        self.connected = False
        self._lock = threading.Lock()

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.connected = False

    def _get(self, name: str) -> Dict:
        try:
            return self.domains[name]
        except KeyError:
            raise NotFound(f"Domain {name} is not defined") from None

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self.domains

    def define(self, xml: str) -> None:
        root = fromstring(xml)
        name = root.findtext("name")
        meta = root.find(f"metadata/{{{DESCRIPTOR_NS}}}descriptor")
        console = root.find("devices/console/source")
        with self._lock:
            self.calls.append(("define", name))
            previous = self.domains.get(name, {})
            self.domains[name] = {
                "xml": xml,
                "digest": meta.get("digest") if meta is not None else None,
                "console": Path(console.get("path")) if console is not None else None,
                "state": previous.get("state", DomainState.DEFINED),
            }

    def descriptor_digest(self, name: str) -> Optional[str]:
        with self._lock:
            return self._get(name)["digest"]

    def create(self, name: str) -> None:
        with self._lock:
            self.calls.append(("create", name))
            domain = self._get(name)
            if domain["state"] is DomainState.RUNNING:
                raise ManagerError(f"Failed to start domain {name}: already active")
            domain["state"] = DomainState.RUNNING
            console = domain["console"]
        if self.console_agents and console is not None:
            self.agents[name] = GuestAgent(console, marker=self.marker).start()

    def shutdown(self, name: str) -> None:
        with self._lock:
            self.calls.append(("shutdown", name))
            self._get(name)
        if self.honour_shutdown:
            self._power_off(name)

    def destroy(self, name: str) -> None:
        with self._lock:
            self.calls.append(("destroy", name))
            self._get(name)
        self._power_off(name)

    def _power_off(self, name: str) -> None:
        with self._lock:
            domain = self.domains.get(name)
            if domain is None or domain["state"] is not DomainState.RUNNING:
                return
            domain["state"] = DomainState.STOPPED
        agent = self.agents.pop(name, None)
        if agent is not None:
            agent.stop()

    def undefine(self, name: str, nvram: bool = False) -> None:
        with self._lock:
            self.calls.append(("undefine", name, nvram))
            self._get(name)
            del self.domains[name]

    def state(self, name: str) -> DomainState:
        with self._lock:
            return self._get(name)["state"]

    def is_active(self, name: str) -> bool:
        return self.state(name) is DomainState.RUNNING

    def shutdown_all(self) -> None:
        for name in list(self.agents):
            self.agents.pop(name).stop()


class FakeFabric:
    """In-memory stand-in for :class:`vsim.fabric.VirtualSwitchFabric`."""

    def __init__(self, state_root: Path, fail_create: Optional[Exception] = None) -> None:
        self.state_root = state_root
        self.fail_create = fail_create
        self.fabrics: Dict[str, Dict[str, PortHandle]] = {}
        self.hosts: Dict[str, str] = {}
        self.detached: List[str] = []

    def create_fabric(self, spec: FabricSpec, cancel=None) -> FabricHandle:
        if self.fail_create is not None:
            raise self.fail_create
        if spec.name in self.fabrics:
            raise ResourceConflict(f"Fabric {spec.name} already exists in this session")
        self.fabrics[spec.name] = {}
        return FabricHandle(
            name=spec.name,
            subnet=spec.subnet,
            gateway=spec.gateway,
            dhcp_range=spec.dhcp_range,
            domain=spec.domain,
            state_dir=self.state_root / "fabrics" / spec.name,
            dhcp_pid=4242,
        )

    def adopt(self, handle: FabricHandle, ports=()) -> None:
        self.fabrics.setdefault(handle.name, {p.link_id: p for p in ports})

    def attach_port(self, fabric: FabricHandle, link: LinkSpec, endpoint: Optional[IPv4Interface] = None) -> PortHandle:
        ports = self.fabrics[fabric.name]
        if link.node_id in ports:
            return ports[link.node_id]
        port = PortHandle(
            fabric=fabric.name,
            link_id=link.node_id,
            index=link.port,
            device=port_device_name(fabric.name, link.port),
            mac=port_mac(fabric.name, link.node_id),
        )
        ports[link.node_id] = port
        if endpoint is not None:
            self.hosts[port.mac] = str(endpoint.ip)
        return port

    def detach_port(self, fabric: FabricHandle, port: PortHandle) -> None:
        self.fabrics.get(fabric.name, {}).pop(port.link_id, None)
        self.hosts.pop(port.mac, None)
        self.detached.append(port.device)

    def list_ports(self, fabric: FabricHandle) -> List[str]:
        return sorted(port.device for port in self.fabrics.get(fabric.name, {}).values())

    def destroy_fabric(self, fabric: FabricHandle) -> None:
        self.fabrics.pop(fabric.name, None)


@pytest.fixture
def host_caps() -> HostCapabilities:
    """An x86_64 KVM host with both system emulators installed."""
    return HostCapabilities(arch="x86_64", kvm=True, emulators=frozenset({"x86_64", "aarch64"}))


@pytest.fixture
def short_tmp():
    """A short temporary directory; unix socket paths are limited to 107 bytes."""
    path = Path(tempfile.mkdtemp(prefix="vsim-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(short_tmp) -> Settings:
    return Settings(
        libvirt_uri="test:///default",
        state_dir=short_tmp / "state",
        boot_timeout=10,
        shutdown_timeout=1,
        handshake_timeout=2,
        exec_timeout=10,
        parallel=4,
    )


@pytest.fixture
def fake_hypervisor():
    hypervisor = FakeHypervisor()
    yield hypervisor
    hypervisor.shutdown_all()


@pytest.fixture
def fake_fabric(tmp_path) -> FakeFabric:
    return FakeFabric(tmp_path / "state")


@pytest.fixture
def tc_run(monkeypatch) -> MagicMock:
    """Record tc invocations made by the impairment engine instead of running them."""
    mock = MagicMock(return_value=subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr=""))
    monkeypatch.setattr("vsim.profiles.run", mock)
    return mock


@pytest.fixture
def disk_images(tmp_path) -> Dict[str, Path]:
    images = {}
    for name in ("a", "b"):
        path = tmp_path / "images" / f"{name}.qcow2"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"QFI\xfb")
        images[name] = path
    return images


@pytest.fixture
def two_node_document(disk_images) -> Dict:
    """Node a (amd64 server, 2 vCPU, 4Gi) on port0 and node b (arm64 agent, 1 vCPU, 2Gi) on port1."""
    return {
        "fabric": {"name": "vsimbr0", "subnet": "10.0.0.0/24", "dhcp_range": ["10.0.0.100", "10.0.0.200"]},
        "default_profile": "default",
        "nodes": [
            {
                "id": "a",
                "architecture": "amd64",
                "role": "server",
                "resources": {"vcpus": 2, "memory": "4Gi"},
                "network": "10.0.0.2/24",
                "accelerator": True,
                "disk_image": str(disk_images["a"]),
            },
            {
                "id": "b",
                "architecture": "arm64",
                "role": "agent",
                "resources": {"vcpus": 1, "memory": "2Gi"},
                "network": "10.0.0.3/24",
                "accelerator": False,
                "disk_image": str(disk_images["b"]),
            },
        ],
        "links": [{"node": "a", "port": 0}, {"node": "b", "port": 1}],
    }


@pytest.fixture
def two_node_topology(two_node_document):
    return parse_topology(two_node_document)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, used to ensure a clean slate.
_PARSE_ENV_VARS = [
    "LIBVIRT_URI",
    "VSIM_STATE_DIR",
    "VSIM_BOOT_TIMEOUT",
    "VSIM_SHUTDOWN_TIMEOUT",
    "VSIM_HANDSHAKE_TIMEOUT",
    "VSIM_EXEC_TIMEOUT",
    "VSIM_PARALLEL",
    "LOG_VERBOSE",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def guest_agent():
    """Factory for :class:`GuestAgent` consoles, stopped at teardown."""
    agents: List[GuestAgent] = []

    def _start(path: Path, marker: bool = True) -> GuestAgent:
        agent = GuestAgent(path, marker=marker).start()
        agents.append(agent)
        return agent

    yield _start
    for agent in agents:
        agent.stop()
