"""DHCP/DNS responder supervision for fabric bootstrap."""

from __future__ import annotations

import errno
import os
import shutil
import signal
import subprocess
import threading
import time
from ipaddress import IPv4Address
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vsim.constants import DHCP_LEASE_TIME
from vsim.exceptions import ManagerError
from vsim.utils import ensure_directory, log


class DnsmasqService:
    """Wrapper responsible for one dnsmasq instance bound to a fabric bridge.

    Leases, static host assignments and DNS names all live in the fabric's
    state directory, so removing that directory discards the lease table.
    """

    def __init__(
        self,
        interface: str,
        state_dir: Path,
        gateway: IPv4Address,
        dhcp_range: Tuple[IPv4Address, IPv4Address],
        domain: str,
    ) -> None:
        self.interface = interface
        self.state_dir = state_dir
        self.gateway = gateway
        self.dhcp_range = dhcp_range
        self.domain = domain
        self.lease_file = state_dir / "dnsmasq.leases"
        self.dhcp_hosts_file = state_dir / "dhcp-hosts"
        self.dns_hosts_file = state_dir / "hosts"
        self.log_file = state_dir / "dnsmasq.log"
        self.stderr_file = state_dir / "dnsmasq.stderr"
        self.process: Optional[subprocess.Popen] = None
        self._adopted_pid: Optional[int] = None
        self._hosts: Dict[str, Tuple[str, str]] = {}
        self._lock = threading.Lock()

    @property
    def pid(self) -> Optional[int]:
        if self.process is not None:
            return self.process.pid
        return self._adopted_pid

    def command(self) -> List[str]:
        start, end = self.dhcp_range
        return [
            "dnsmasq",
            "--keep-in-foreground",
            "--conf-file=/dev/null",
            "--pid-file=",
            "--bind-interfaces",
            f"--interface={self.interface}",
            "--except-interface=lo",
            f"--listen-address={self.gateway}",
            f"--dhcp-range={start},{end},{DHCP_LEASE_TIME}",
            "--dhcp-authoritative",
            f"--dhcp-leasefile={self.lease_file}",
            f"--dhcp-hostsfile={self.dhcp_hosts_file}",
            f"--addn-hosts={self.dns_hosts_file}",
            f"--domain={self.domain}",
            f"--local=/{self.domain}/",
            f"--log-facility={self.log_file}",
        ]

    def start(self) -> None:
        if shutil.which("dnsmasq") is None:
            raise ManagerError("dnsmasq not found. Install dnsmasq on the hypervisor host.")
        ensure_directory(self.state_dir)
        for path in (self.lease_file, self.dhcp_hosts_file, self.dns_hosts_file):
            path.touch()
        log("INFO", f"Starting DHCP/DNS responder on {self.interface} ({self.dhcp_range[0]}-{self.dhcp_range[1]})")
        # stderr goes to a file: nothing drains a pipe once dnsmasq is up.
        with open(self.stderr_file, "w") as stderr:
            try:
                proc = subprocess.Popen(
                    self.command(),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                )
            except FileNotFoundError as exc:
                raise ManagerError(f"Failed to start dnsmasq: {exc}") from exc
        self.process = proc
        self._assert_running(proc, "dnsmasq")

    def adopt(self, pid: int) -> None:
        """Take over a responder started by an earlier controller process."""
        self._adopted_pid = pid
        self._hosts = self._read_hosts()

    def _assert_running(self, proc: subprocess.Popen, name: str) -> None:
        time.sleep(0.5)
        if proc.poll() is not None:
            proc.wait()
            stderr = self.stderr_file.read_text(errors="replace").strip() if self.stderr_file.exists() else ""
            log("ERROR", f"{name} failed to start")
            if stderr:
                log("ERROR", f"{name} stderr:\n{stderr}")
            self.process = None
            raise ManagerError(f"{name} exited prematurely (code {proc.returncode})")

    def add_host(self, mac: str, hostname: str, address: IPv4Address) -> None:
        with self._lock:
            if self._hosts.get(mac) == (hostname, str(address)):
                return
            self._hosts[mac] = (hostname, str(address))
            self._write_hosts()
        self.reload()

    def remove_host(self, mac: str) -> None:
        with self._lock:
            if self._hosts.pop(mac, None) is None:
                return
            self._write_hosts()
        self.reload()

    def _write_hosts(self) -> None:
        dhcp_lines = []
        dns_lines = []
        for mac, (hostname, address) in sorted(self._hosts.items(), key=lambda item: item[1]):
            dhcp_lines.append(f"{mac},{address},{hostname}")
            dns_lines.append(f"{address} {hostname}.{self.domain} {hostname}")
        self.dhcp_hosts_file.write_text("".join(line + "\n" for line in dhcp_lines))
        self.dns_hosts_file.write_text("".join(line + "\n" for line in dns_lines))

    def _read_hosts(self) -> Dict[str, Tuple[str, str]]:
        hosts: Dict[str, Tuple[str, str]] = {}
        if not self.dhcp_hosts_file.exists():
            return hosts
        for line in self.dhcp_hosts_file.read_text().splitlines():
            parts = line.strip().split(",")
            if len(parts) == 3:
                hosts[parts[0]] = (parts[2], parts[1])
        return hosts

    def reload(self) -> None:
        """dnsmasq re-reads --dhcp-hostsfile and --addn-hosts on SIGHUP."""
        pid = self.pid
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGHUP)
        except ProcessLookupError:
            log("WARN", f"DHCP/DNS responder (PID {pid}) is gone; host table not reloaded")

    def is_running(self) -> bool:
        if self.process is not None:
            return self.process.poll() is None
        if self._adopted_pid is None:
            return False
        try:
            os.kill(self._adopted_pid, 0)
        except OSError as exc:
            return exc.errno == errno.EPERM
        return True

    def stop(self) -> None:
        if self.process is not None:
            proc = self.process
            self.process = None
            if proc.poll() is None:
                proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
            return
        pid = self._adopted_pid
        self._adopted_pid = None
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        deadline = time.time() + 5
        while time.time() < deadline:
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                return
            time.sleep(0.1)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
