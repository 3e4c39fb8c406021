"""Data models for vsim."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class Architecture(enum.Enum):
    AMD64 = "amd64"
    ARM64 = "arm64"

    @property
    def libvirt_name(self) -> str:
        return "x86_64" if self is Architecture.AMD64 else "aarch64"


class Role(enum.Enum):
    SERVER = "server"
    AGENT = "agent"


class DomainState(enum.Enum):
    UNDEFINED = "Undefined"
    DEFINED = "Defined"
    RUNNING = "Running"
    STOPPED = "Stopped"
    DESTROYED = "Destroyed"


class ConsoleState(enum.Enum):
    WAITING_FOR_DEVICE = "WaitingForDevice"
    REDIRECTING = "Redirecting"
    HANDSHAKE = "Handshake"
    SHELL_ACTIVE = "ShellActive"
    CLOSED = "Closed"
    HANDSHAKE_TIMEOUT = "HandshakeTimeout"
    COMMAND_TIMEOUT = "CommandTimeout"


@dataclass(frozen=True)
class Resources:
    vcpus: int
    memory_mib: int


@dataclass(frozen=True)
class NodeSpec:
    id: str
    architecture: Architecture
    role: Role
    resources: Resources
    network_endpoint: IPv4Interface
    # None: accelerated when the host runs this arch natively with KVM.
    accelerator: Optional[bool]
    disk_image_ref: str
    extra_disk_gib: int = 0


@dataclass(frozen=True)
class LinkSpec:
    node_id: str
    port: int
    profile: Optional[str] = None


@dataclass(frozen=True)
class ImpairmentProfile:
    """Per-port shaping parameters; ``None`` leaves that dimension unshaped."""

    name: str
    bandwidth_kbit: Optional[int] = None
    latency_ms: Optional[float] = None
    jitter_ms: Optional[float] = None
    loss: Optional[float] = None  # probability in [0, 1]
    description: str = ""

    @property
    def is_clear(self) -> bool:
        return all(
            value is None
            for value in (self.bandwidth_kbit, self.latency_ms, self.jitter_ms, self.loss)
        )


@dataclass(frozen=True)
class FabricSpec:
    name: str
    subnet: IPv4Network
    gateway: IPv4Address
    dhcp_range: Tuple[IPv4Address, IPv4Address]
    domain: str = "local"


@dataclass(frozen=True)
class Topology:
    fabric: FabricSpec
    nodes: Tuple[NodeSpec, ...]
    links: Tuple[LinkSpec, ...]
    default_profile: str = "default"
    profiles: Dict[str, ImpairmentProfile] = field(default_factory=dict, hash=False)
    source: Optional[Path] = field(default=None, compare=False)

    def node(self, node_id: str) -> NodeSpec:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def link_for(self, node_id: str) -> LinkSpec:
        for link in self.links:
            if link.node_id == node_id:
                return link
        raise KeyError(node_id)


@dataclass
class FabricHandle:
    name: str
    subnet: IPv4Network
    gateway: IPv4Address
    dhcp_range: Tuple[IPv4Address, IPv4Address]
    domain: str
    state_dir: Path
    dhcp_pid: Optional[int] = None


@dataclass(frozen=True)
class PortHandle:
    fabric: str
    link_id: str  # node id owning the link
    index: int
    device: str
    mac: str


@dataclass(frozen=True)
class DomainDescriptor:
    name: str
    architecture: str  # libvirt arch name
    domain_type: str  # "kvm" or "qemu"
    vcpus: int
    memory_mib: int
    disk_path: str
    disk_format: str
    port_device: str
    mac: str
    console_path: str
    emulated: bool
    description: str
    digest: str
    xml: str = field(repr=False, compare=False)
    extra_disk_path: Optional[str] = None
    extra_disk_gib: int = 0
    nvram_path: Optional[str] = None
    nvram_template: Optional[str] = None

    @property
    def performance_note(self) -> str:
        return "software emulation (10-20x slower)" if self.emulated else "hardware accelerated"


@dataclass
class GuestDomain:
    node_id: str
    descriptor: DomainDescriptor
    port: Optional[PortHandle] = None
    state: DomainState = DomainState.UNDEFINED

    @property
    def name(self) -> str:
        return self.descriptor.name


@dataclass
class NodeStatus:
    node_id: str
    state: Optional[DomainState]
    profile: str = "default"
    console: Optional[ConsoleState] = None
    emulated: bool = False
    error: Optional[str] = None

    @property
    def label(self) -> str:
        if self.state is None:
            return "NotFound"
        return self.state.value

    def summary(self) -> str:
        parts: List[str] = [self.label]
        if self.state is DomainState.DEFINED:
            parts.append("defined but not started")
        if self.console is not None and self.state is DomainState.RUNNING:
            parts.append(f"console={self.console.value}")
        parts.append(f"profile={self.profile}")
        if self.emulated:
            parts.append("software emulation (10-20x slower)")
        if self.error:
            parts.append(f"error: {self.error}")
        return ", ".join(parts)


@dataclass
class Settings:
    """Runtime settings gathered from the environment."""

    libvirt_uri: str
    state_dir: Path
    boot_timeout: int = 300
    shutdown_timeout: int = 60
    handshake_timeout: int = 60
    exec_timeout: int = 120
    parallel: int = 4
    verbose: bool = False
