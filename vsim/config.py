"""Topology loading and environment variable parsing for vsim."""

from __future__ import annotations

from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vsim.constants import (
    _LOG_VERBOSE,
    ARCH_ALIASES,
    DEFAULT_BRIDGE,
    DEFAULT_DNS_DOMAIN,
    DEFAULT_PROFILE,
    IFNAME_MAX,
    IFNAME_RE,
    LIBVIRT_URI,
    NODE_ID_RE,
    STATE_DIR,
)
from vsim.exceptions import InvalidProfile, ManagerError, TopologyError
from vsim.fabric import port_device_name
from vsim.models import (
    Architecture,
    FabricSpec,
    ImpairmentProfile,
    LinkSpec,
    NodeSpec,
    Resources,
    Role,
    Settings,
    Topology,
)
from vsim.profiles import BUILTIN_PROFILES, profile_from_dict
from vsim.utils import get_env, get_env_bool, log, parse_int_env, parse_memory_mib


def parse_env() -> Settings:
    state_dir = Path(get_env("VSIM_STATE_DIR", str(STATE_DIR)) or str(STATE_DIR))
    return Settings(
        libvirt_uri=get_env("LIBVIRT_URI", LIBVIRT_URI) or LIBVIRT_URI,
        state_dir=state_dir,
        boot_timeout=parse_int_env("VSIM_BOOT_TIMEOUT", "300"),
        shutdown_timeout=parse_int_env("VSIM_SHUTDOWN_TIMEOUT", "60"),
        handshake_timeout=parse_int_env("VSIM_HANDSHAKE_TIMEOUT", "60"),
        exec_timeout=parse_int_env("VSIM_EXEC_TIMEOUT", "120"),
        parallel=parse_int_env("VSIM_PARALLEL", "4", min_val=1, max_val=64),
        verbose=get_env_bool("LOG_VERBOSE", _LOG_VERBOSE),
    )


def _require(data: Mapping, key: str, where: str):
    if key not in data or data[key] is None:
        raise TopologyError(f"{where}: missing required field '{key}'")
    return data[key]


def _default_dhcp_range(subnet: IPv4Network) -> Tuple[IPv4Address, IPv4Address]:
    network = subnet.network_address
    if subnet.num_addresses >= 256:
        return network + 100, network + 200
    half = subnet.num_addresses // 2
    return network + half, subnet.broadcast_address - 1


def _parse_fabric(data: Mapping) -> FabricSpec:
    name = str(data.get("name", DEFAULT_BRIDGE))
    if not IFNAME_RE.match(name) or len(name) > IFNAME_MAX:
        raise TopologyError(
            f"fabric.name '{name}' is not a valid interface name (letters, digits, '-', '_'; at most {IFNAME_MAX})"
        )
    try:
        subnet = IPv4Network(str(_require(data, "subnet", "fabric")))
    except ValueError as exc:
        raise TopologyError(f"fabric.subnet: {exc}") from exc
    if subnet.num_addresses < 4:
        raise TopologyError(f"fabric.subnet {subnet} is too small")

    try:
        gateway = IPv4Address(str(data["gateway"])) if data.get("gateway") else subnet.network_address + 1
    except ValueError as exc:
        raise TopologyError(f"fabric.gateway: {exc}") from exc
    if gateway not in subnet or gateway in (subnet.network_address, subnet.broadcast_address):
        raise TopologyError(f"fabric.gateway {gateway} is not a host address of {subnet}")

    raw_range = data.get("dhcp_range")
    if raw_range is None:
        dhcp_range = _default_dhcp_range(subnet)
    else:
        if not isinstance(raw_range, (list, tuple)) or len(raw_range) != 2:
            raise TopologyError("fabric.dhcp_range must be a [start, end] pair")
        try:
            dhcp_range = (IPv4Address(str(raw_range[0])), IPv4Address(str(raw_range[1])))
        except ValueError as exc:
            raise TopologyError(f"fabric.dhcp_range: {exc}") from exc
    start, end = dhcp_range
    if start not in subnet or end not in subnet or start > end:
        raise TopologyError(f"fabric.dhcp_range {start}-{end} is not an ordered range inside {subnet}")
    if start <= gateway <= end:
        raise TopologyError(f"fabric.dhcp_range {start}-{end} contains the gateway {gateway}")

    return FabricSpec(
        name=name,
        subnet=subnet,
        gateway=gateway,
        dhcp_range=dhcp_range,
        domain=str(data.get("domain", DEFAULT_DNS_DOMAIN)),
    )


def _parse_node(data: Mapping, index: int, fabric: FabricSpec, base_dir: Path) -> NodeSpec:
    if not isinstance(data, Mapping):
        raise TopologyError(f"nodes[{index}] must be a mapping")
    node_id = str(_require(data, "id", f"nodes[{index}]"))
    where = f"node '{node_id}'"
    if not NODE_ID_RE.match(node_id):
        raise TopologyError(f"{where}: id must be alphanumeric with '.', '_' or '-'")

    raw_arch = str(_require(data, "architecture", where)).lower()
    if raw_arch not in ARCH_ALIASES:
        raise TopologyError(f"{where}: unknown architecture '{raw_arch}' (use amd64 or arm64)")
    architecture = Architecture.AMD64 if ARCH_ALIASES[raw_arch] == "x86_64" else Architecture.ARM64

    try:
        role = Role(str(_require(data, "role", where)).lower())
    except ValueError:
        raise TopologyError(f"{where}: role must be 'server' or 'agent'") from None

    resources = _require(data, "resources", where)
    if not isinstance(resources, Mapping):
        raise TopologyError(f"{where}: resources must be a mapping")
    vcpus = resources.get("vcpus", resources.get("cpus"))
    if isinstance(vcpus, bool) or not isinstance(vcpus, int) or vcpus < 1:
        raise TopologyError(f"{where}: resources.vcpus must be a positive integer")
    try:
        memory_mib = parse_memory_mib(_require(resources, "memory", f"{where} resources"))
    except ManagerError as exc:
        raise TopologyError(f"{where}: {exc}") from exc

    try:
        endpoint = IPv4Interface(str(_require(data, "network", where)))
    except ValueError as exc:
        raise TopologyError(f"{where}: network: {exc}") from exc
    if endpoint.network != fabric.subnet:
        raise TopologyError(f"{where}: network endpoint {endpoint} is outside the fabric subnet {fabric.subnet}")
    if endpoint.ip in (fabric.subnet.network_address, fabric.subnet.broadcast_address, fabric.gateway):
        raise TopologyError(f"{where}: {endpoint.ip} is reserved on {fabric.subnet}")

    accelerator = data.get("accelerator")
    if accelerator is not None and not isinstance(accelerator, bool):
        raise TopologyError(f"{where}: accelerator must be true or false")

    disk_image = Path(str(_require(data, "disk_image", where))).expanduser()
    if not disk_image.is_absolute():
        disk_image = base_dir / disk_image

    extra_disk = data.get("extra_disk", 0) or 0
    if isinstance(extra_disk, bool) or not isinstance(extra_disk, int) or extra_disk < 0:
        raise TopologyError(f"{where}: extra_disk must be a size in GiB")

    return NodeSpec(
        id=node_id,
        architecture=architecture,
        role=role,
        resources=Resources(vcpus=vcpus, memory_mib=memory_mib),
        network_endpoint=endpoint,
        accelerator=accelerator,
        disk_image_ref=str(disk_image),
        extra_disk_gib=extra_disk,
    )


def _parse_links(raw, nodes: List[NodeSpec], profiles: Mapping[str, ImpairmentProfile]) -> Tuple[LinkSpec, ...]:
    if raw is None:
        return tuple(LinkSpec(node_id=node.id, port=index) for index, node in enumerate(nodes))
    if not isinstance(raw, list):
        raise TopologyError("links must be a list")
    node_ids = {node.id for node in nodes}
    links: Dict[str, LinkSpec] = {}
    ports: Dict[int, str] = {}
    for index, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            raise TopologyError(f"links[{index}] must be a mapping")
        node_id = str(_require(entry, "node", f"links[{index}]"))
        port = _require(entry, "port", f"links[{index}]")
        if isinstance(port, bool) or not isinstance(port, int) or port < 0:
            raise TopologyError(f"links[{index}]: port must be a non-negative integer")
        if node_id not in node_ids:
            raise TopologyError(f"links[{index}]: unknown node '{node_id}'")
        if node_id in links:
            raise TopologyError(f"Node '{node_id}' has more than one link")
        if port in ports:
            raise TopologyError(f"Port {port} is assigned to both '{ports[port]}' and '{node_id}'")
        profile = entry.get("profile")
        if profile is not None and str(profile) not in profiles:
            raise TopologyError(f"links[{index}]: unknown profile '{profile}'")
        links[node_id] = LinkSpec(node_id=node_id, port=port, profile=str(profile) if profile is not None else None)
        ports[port] = node_id
    missing = [node.id for node in nodes if node.id not in links]
    if missing:
        raise TopologyError(f"Nodes without a link: {', '.join(missing)}")
    return tuple(links[node.id] for node in nodes)


def parse_topology(data, source: Optional[Path] = None) -> Topology:
    """Validate a decoded topology document and build the immutable Topology."""
    if not isinstance(data, Mapping):
        raise TopologyError("Topology must be a mapping")
    base_dir = source.parent if source is not None else Path.cwd()
    fabric = _parse_fabric(_require(data, "fabric", "topology"))

    profiles: Dict[str, ImpairmentProfile] = dict(BUILTIN_PROFILES)
    custom = data.get("profiles") or {}
    if not isinstance(custom, Mapping):
        raise TopologyError("profiles must be a mapping of name -> parameters")
    for name, params in custom.items():
        try:
            profiles[str(name)] = profile_from_dict(str(name), params or {})
        except InvalidProfile as exc:
            raise TopologyError(str(exc)) from exc

    default_profile = str(data.get("default_profile", DEFAULT_PROFILE))
    if default_profile not in profiles:
        raise TopologyError(f"default_profile '{default_profile}' is not a known profile")

    raw_nodes = _require(data, "nodes", "topology")
    if not isinstance(raw_nodes, list) or not raw_nodes:
        raise TopologyError("nodes must be a non-empty list")
    nodes: List[NodeSpec] = []
    seen_ids: Dict[str, int] = {}
    seen_ips: Dict[IPv4Address, str] = {}
    start, end = fabric.dhcp_range
    for index, raw in enumerate(raw_nodes):
        node = _parse_node(raw, index, fabric, base_dir)
        if node.id in seen_ids:
            raise TopologyError(f"Duplicate node id '{node.id}'")
        ip = node.network_endpoint.ip
        if ip in seen_ips:
            raise TopologyError(f"Nodes '{seen_ips[ip]}' and '{node.id}' share address {ip}")
        if start <= ip <= end:
            log("WARN", f"Node '{node.id}' address {ip} lies inside the DHCP range {start}-{end}")
        seen_ids[node.id] = index
        seen_ips[ip] = node.id
        nodes.append(node)

    links = _parse_links(data.get("links"), nodes, profiles)
    for link in links:
        try:
            port_device_name(fabric.name, link.port)
        except TopologyError as exc:
            raise TopologyError(f"Link of '{link.node_id}': {exc}") from exc

    return Topology(
        fabric=fabric,
        nodes=tuple(nodes),
        links=links,
        default_profile=default_profile,
        profiles=profiles,
        source=source,
    )


def load_topology(path: Path) -> Topology:
    if not path.exists():
        raise TopologyError(f"Topology file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise TopologyError(f"Topology file {path} is not valid YAML: {exc}") from exc
    return parse_topology(data, source=path.resolve())
