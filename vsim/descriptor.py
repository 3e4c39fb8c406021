"""Guest descriptor compiler: NodeSpec + port + disk image -> libvirt domain XML."""

from __future__ import annotations

import hashlib
import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Optional
from xml.etree.ElementTree import Element, SubElement, register_namespace, tostring

from vsim.constants import EMULATION_SLOWDOWN, STATE_DIR, SUPPORTED_ARCHES
from vsim.exceptions import UnsupportedArchitecture
from vsim.models import DomainDescriptor, NodeSpec, PortHandle
from vsim.utils import host_architecture, kvm_available

DESCRIPTOR_NS = "urn:vsim:descriptor:1"

_DISK_FORMATS = {
    ".qcow2": "qcow2",
    ".qcow": "qcow2",
    ".img": "raw",
    ".raw": "raw",
    ".wic": "raw",
}


@dataclass(frozen=True)
class HostCapabilities:
    """What the hypervisor host can execute: its own arch, KVM, installed emulators."""

    arch: str
    kvm: bool
    emulators: FrozenSet[str]

    @classmethod
    def detect(cls) -> "HostCapabilities":
        emulators = frozenset(
            arch for arch, profile in SUPPORTED_ARCHES.items() if shutil.which(profile["emulator"])
        )
        return cls(arch=host_architecture(), kvm=kvm_available(), emulators=emulators)


def disk_format(disk_image_ref: str) -> str:
    return _DISK_FORMATS.get(Path(disk_image_ref).suffix.lower(), "raw")


def console_socket_path(state_dir: Path, node_id: str) -> Path:
    return state_dir / "consoles" / f"{node_id}.sock"


def wants_emulation(node: NodeSpec, host: HostCapabilities) -> bool:
    """Explicit ``accelerator`` wins; unset means accelerate only a native arch with KVM."""
    if node.accelerator is None:
        return not (node.architecture.libvirt_name == host.arch and host.kvm)
    return not node.accelerator


def _execution_mode(node: NodeSpec, host: HostCapabilities) -> str:
    arch = node.architecture.libvirt_name
    if arch not in SUPPORTED_ARCHES:
        raise UnsupportedArchitecture(f"{node.id}: architecture {node.architecture.value} is not supported")
    if arch not in host.emulators:
        emulator = SUPPORTED_ARCHES[arch]["emulator"]
        raise UnsupportedArchitecture(
            f"{node.id}: no execution mode for {node.architecture.value} on this host ({emulator} not installed)"
        )
    if wants_emulation(node, host):
        return "qemu"
    if arch != host.arch:
        raise UnsupportedArchitecture(
            f"{node.id}: {node.architecture.value} cannot be hardware accelerated on a {host.arch} host; "
            "set accelerator: false for software emulation"
        )
    if not host.kvm:
        raise UnsupportedArchitecture(f"{node.id}: hardware acceleration requested but /dev/kvm is not available")
    return "kvm"


def compile_descriptor(
    node: NodeSpec,
    port: PortHandle,
    disk_image_ref: str,
    host: HostCapabilities,
    state_dir: Path = STATE_DIR,
) -> DomainDescriptor:
    """Translate a node into its domain descriptor. Pure: touches neither host nor libvirt."""
    domain_type = _execution_mode(node, host)
    arch = node.architecture.libvirt_name
    arch_profile = SUPPORTED_ARCHES[arch]
    emulated = domain_type == "qemu"

    performance = f"software emulation ({EMULATION_SLOWDOWN})" if emulated else "hardware accelerated"
    description = f"{node.id} - k3s {node.role.value} ({node.architecture.value}, {performance})"

    firmware = arch_profile.get("firmware")
    nvram_path: Optional[str] = None
    nvram_template: Optional[str] = None
    if firmware:
        nvram_path = str(state_dir / "nvram" / f"{node.id}_VARS.fd")
        nvram_template = str(firmware["vars_template"])
    extra_disk_path: Optional[str] = None
    if node.extra_disk_gib > 0:
        extra_disk_path = str(state_dir / "disks" / f"{node.id}-data.qcow2")

    fields: Dict[str, object] = {
        "name": node.id,
        "architecture": arch,
        "domain_type": domain_type,
        "vcpus": node.resources.vcpus,
        "memory_mib": node.resources.memory_mib,
        "disk_path": disk_image_ref,
        "disk_format": disk_format(disk_image_ref),
        "port_device": port.device,
        "mac": port.mac,
        "console_path": str(console_socket_path(state_dir, node.id)),
        "emulated": emulated,
        "description": description,
        "extra_disk_path": extra_disk_path,
        "extra_disk_gib": node.extra_disk_gib,
        "nvram_path": nvram_path,
        "nvram_template": nvram_template,
    }
    digest = hashlib.sha256(json.dumps(fields, sort_keys=True).encode("utf-8")).hexdigest()
    xml = _render_domain_xml(fields, digest, node.role.value, arch_profile)
    return DomainDescriptor(digest=digest, xml=xml, **fields)  # type: ignore[arg-type]


def _render_domain_xml(fields: Dict[str, object], digest: str, role: str, arch_profile: Dict) -> str:
    register_namespace("vsim", DESCRIPTOR_NS)

    vcpus = int(fields["vcpus"])  # type: ignore[arg-type]
    memory = int(fields["memory_mib"])  # type: ignore[arg-type]
    emulated = bool(fields["emulated"])

    domain = Element("domain", type=str(fields["domain_type"]))
    SubElement(domain, "name").text = str(fields["name"])
    SubElement(domain, "description").text = str(fields["description"])

    metadata = SubElement(domain, "metadata")
    SubElement(
        metadata,
        f"{{{DESCRIPTOR_NS}}}descriptor",
        digest=digest,
        role=role,
        emulated="yes" if emulated else "no",
    )

    SubElement(domain, "memory", unit="MiB").text = str(memory)
    SubElement(domain, "vcpu", placement="static").text = str(vcpus)

    cputune = SubElement(domain, "cputune")
    SubElement(cputune, "shares").text = str(vcpus * 1024)
    memtune = SubElement(domain, "memtune")
    SubElement(memtune, "hard_limit", unit="MiB").text = str(memory + 128)
    SubElement(memtune, "soft_limit", unit="MiB").text = str(memory)

    # <cpu>: KVM passes the host CPU through, TCG needs an explicit model
    if emulated:
        cpu_el = SubElement(domain, "cpu", mode="custom", match="exact")
        SubElement(cpu_el, "model", fallback="allow").text = arch_profile["tcg_model"]
    else:
        SubElement(domain, "cpu", mode="host-passthrough")

    # <os>
    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch=str(fields["architecture"]), machine=arch_profile["machine"]).text = "hvm"
    firmware = arch_profile.get("firmware")
    if firmware:
        SubElement(os_el, "loader", readonly="yes", type="pflash").text = str(firmware["loader"])
        SubElement(os_el, "nvram").text = str(fields["nvram_path"])
    SubElement(os_el, "boot", dev="hd")

    # <features>
    features_el = SubElement(domain, "features")
    for feature in arch_profile.get("features", ()):
        SubElement(features_el, feature)
    if arch_profile.get("gic_version"):
        SubElement(features_el, "gic", version=arch_profile["gic_version"])

    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type=str(fields["disk_format"]), cache="writeback")
    SubElement(disk, "source", file=str(fields["disk_path"]))
    SubElement(disk, "target", dev="vda", bus="virtio")

    if fields["extra_disk_path"]:
        extra = SubElement(devices, "disk", type="file", device="disk")
        SubElement(extra, "driver", name="qemu", type="qcow2", cache="writeback")
        SubElement(extra, "source", file=str(fields["extra_disk_path"]))
        SubElement(extra, "target", dev="vdb", bus="virtio")

    # Single NIC on the fabric tap; the tap already exists, libvirt must not manage it
    iface = SubElement(devices, "interface", type="ethernet")
    SubElement(iface, "mac", address=str(fields["mac"]))
    SubElement(iface, "target", dev=str(fields["port_device"]), managed="no")
    SubElement(iface, "model", type="virtio")

    # Single console: virtio (hvc0 in the guest) backed by a host unix socket
    console = SubElement(devices, "console", type="unix")
    SubElement(console, "source", mode="bind", path=str(fields["console_path"]))
    SubElement(console, "target", type="virtio", port="0")

    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    from xml.dom.minidom import parseString

    raw = tostring(domain, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()
