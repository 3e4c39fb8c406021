"""Session record: what a running test-bed looks like, for later CLI invocations."""

from __future__ import annotations

import json
import os
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path
from typing import Dict, List, Optional

from vsim.constants import SESSION_FILE_NAME
from vsim.exceptions import ManagerError
from vsim.models import FabricHandle, PortHandle
from vsim.utils import ensure_directory, log


class SessionRecord:
    """Fabric handle, ports, applied profile names, per-node errors and destroyed nodes."""

    def __init__(
        self,
        topology: Path,
        fabric: FabricHandle,
        ports: Optional[Dict[str, PortHandle]] = None,
        profiles: Optional[Dict[str, str]] = None,
        errors: Optional[Dict[str, str]] = None,
        destroyed: Optional[List[str]] = None,
    ) -> None:
        self.topology = topology
        self.fabric = fabric
        self.ports = ports or {}
        self.profiles = profiles or {}
        self.errors = errors or {}
        self.destroyed = sorted(set(destroyed or ()))

    def to_dict(self) -> Dict:
        fabric = self.fabric
        return {
            "topology": str(self.topology),
            "fabric": {
                "name": fabric.name,
                "subnet": str(fabric.subnet),
                "gateway": str(fabric.gateway),
                "dhcp_range": [str(fabric.dhcp_range[0]), str(fabric.dhcp_range[1])],
                "domain": fabric.domain,
                "state_dir": str(fabric.state_dir),
                "dhcp_pid": fabric.dhcp_pid,
            },
            "ports": {
                node_id: {"index": port.index, "device": port.device, "mac": port.mac}
                for node_id, port in sorted(self.ports.items())
            },
            "profiles": dict(sorted(self.profiles.items())),
            "errors": dict(sorted(self.errors.items())),
            "destroyed": list(self.destroyed),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionRecord":
        try:
            raw = data["fabric"]
            fabric = FabricHandle(
                name=raw["name"],
                subnet=IPv4Network(raw["subnet"]),
                gateway=IPv4Address(raw["gateway"]),
                dhcp_range=(IPv4Address(raw["dhcp_range"][0]), IPv4Address(raw["dhcp_range"][1])),
                domain=raw["domain"],
                state_dir=Path(raw["state_dir"]),
                dhcp_pid=raw.get("dhcp_pid"),
            )
            ports = {
                node_id: PortHandle(
                    fabric=fabric.name,
                    link_id=node_id,
                    index=int(entry["index"]),
                    device=entry["device"],
                    mac=entry["mac"],
                )
                for node_id, entry in data.get("ports", {}).items()
            }
            return cls(
                topology=Path(data["topology"]),
                fabric=fabric,
                ports=ports,
                profiles=dict(data.get("profiles", {})),
                errors=dict(data.get("errors", {})),
                destroyed=list(data.get("destroyed", [])),
            )
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ManagerError(f"Session record is corrupt: {exc}") from exc


class SessionStore:
    """Reads and writes the session record under the state directory."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / SESSION_FILE_NAME

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, record: SessionRecord) -> None:
        ensure_directory(self.path.parent)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2) + "\n")
        os.replace(tmp, self.path)
        log("DEBUG", f"Session record written to {self.path}")

    def load(self) -> SessionRecord:
        if not self.path.exists():
            raise ManagerError(f"No active session (missing {self.path}); run 'vsim up' first")
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as exc:
            raise ManagerError(f"Session record {self.path} is not valid JSON: {exc}") from exc
        return SessionRecord.from_dict(data)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
