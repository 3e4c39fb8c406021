"""libvirt adapter: the only module talking to the virtualization layer."""

from __future__ import annotations

import threading
from typing import Optional
from xml.etree.ElementTree import ParseError, fromstring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from vsim.constants import LIBVIRT_URI
from vsim.descriptor import DESCRIPTOR_NS
from vsim.exceptions import ManagerError, NotFound
from vsim.models import DomainState
from vsim.utils import log

_ACTIVE_STATES = {
    libvirt.VIR_DOMAIN_RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED,
    libvirt.VIR_DOMAIN_PAUSED,
    libvirt.VIR_DOMAIN_SHUTDOWN,
    libvirt.VIR_DOMAIN_PMSUSPENDED,
}


def _message(exc: "libvirt.libvirtError") -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


class LibvirtHypervisor:
    """Name-addressed domain operations over one libvirt connection.

    libvirt connections are thread safe; every call looks the domain up again
    so a domain removed behind our back surfaces as :class:`NotFound`.
    """

    def __init__(self, uri: str = LIBVIRT_URI) -> None:
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None
        self._connect_lock = threading.Lock()

    def connect(self) -> None:
        with self._connect_lock:
            if self.conn is not None:
                return
            try:
                self.conn = libvirt.open(self.uri)
            except libvirt.libvirtError as exc:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}: {_message(exc)}") from exc
            if self.conn is None:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}")
            log("DEBUG", f"Connected to {self.uri}")

    def close(self) -> None:
        with self._connect_lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                except libvirt.libvirtError:
                    log("DEBUG", "libvirt connection already closed")
                self.conn = None

    def _domain(self, name: str) -> "libvirt.virDomain":
        if self.conn is None:
            self.connect()
        try:
            return self.conn.lookupByName(name)  # type: ignore[union-attr]
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise NotFound(f"Domain {name} is not defined") from exc
            raise ManagerError(f"Failed to look up domain {name}: {_message(exc)}") from exc

    def exists(self, name: str) -> bool:
        try:
            self._domain(name)
        except NotFound:
            return False
        return True

    def define(self, xml: str) -> None:
        if self.conn is None:
            self.connect()
        try:
            domain = self.conn.defineXML(xml)  # type: ignore[union-attr]
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to define domain: {_message(exc)}") from exc
        if domain is None:
            raise ManagerError("Failed to define libvirt domain")

    def descriptor_digest(self, name: str) -> Optional[str]:
        """Digest recorded in the domain's metadata when it was defined, if any."""
        domain = self._domain(name)
        try:
            raw = domain.metadata(libvirt.VIR_DOMAIN_METADATA_ELEMENT, DESCRIPTOR_NS, 0)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN_METADATA:
                return None
            raise ManagerError(f"Failed to read metadata of {name}: {_message(exc)}") from exc
        try:
            return fromstring(raw).get("digest")
        except ParseError:
            log("WARN", f"Domain {name} carries unparseable descriptor metadata")
            return None

    def create(self, name: str) -> None:
        domain = self._domain(name)
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            message = _message(exc)
            if "cgroup" in message.lower():
                raise ManagerError(
                    f"libvirt could not access host cgroups: {message}\n"
                    "Check that the hypervisor host exposes the cgroup hierarchy to libvirtd."
                ) from exc
            raise ManagerError(f"Failed to start domain {name}: {message}") from exc

    def shutdown(self, name: str) -> None:
        domain = self._domain(name)
        try:
            domain.shutdown()
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to request shutdown of {name}: {_message(exc)}") from exc

    def destroy(self, name: str) -> None:
        """Force power-off; a domain that is not running is left alone."""
        domain = self._domain(name)
        try:
            if domain.isActive():
                domain.destroy()
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_OPERATION_INVALID:
                return
            raise ManagerError(f"Failed to power off {name}: {_message(exc)}") from exc

    def undefine(self, name: str, nvram: bool = False) -> None:
        domain = self._domain(name)
        try:
            # NVRAM domains (UEFI) need the NVRAM flag to undefine
            if nvram:
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            else:
                domain.undefine()
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to undefine {name}: {_message(exc)}") from exc

    def state(self, name: str) -> DomainState:
        """Map libvirt's (state, reason) pair onto the lifecycle states.

        A persistent domain that never ran reports shut-off with reason
        "unknown"; any other shut-off reason means it ran and was stopped.
        """
        domain = self._domain(name)
        try:
            state, reason = domain.state()
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise NotFound(f"Domain {name} is not defined") from exc
            raise ManagerError(f"Failed to query state of {name}: {_message(exc)}") from exc
        if state in _ACTIVE_STATES:
            return DomainState.RUNNING
        if state == libvirt.VIR_DOMAIN_SHUTOFF and reason == libvirt.VIR_DOMAIN_SHUTOFF_UNKNOWN:
            return DomainState.DEFINED
        return DomainState.STOPPED

    def is_active(self, name: str) -> bool:
        return self.state(name) is DomainState.RUNNING
