"""Tests for vsim.fabric module."""

from __future__ import annotations

import json
import subprocess
import threading
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from vsim.exceptions import Cancelled, ManagerError, NotFound, ResourceConflict, TopologyError
from vsim.fabric import VirtualSwitchFabric, port_device_name, port_mac
from vsim.models import FabricSpec, LinkSpec


class FakeIp:
    """Minimal iproute2 emulation: tracks links and bridge membership."""

    def __init__(self) -> None:
        self.links: Dict[str, Optional[str]] = {}  # device -> master
        self.commands: List[List[str]] = []
        self.fail_on: Optional[str] = None

    def __call__(self, cmd, check=True, **kwargs):
        self.commands.append(list(cmd))
        text = " ".join(cmd)
        if self.fail_on and self.fail_on in text:
            if check:
                raise subprocess.CalledProcessError(2, cmd, stderr="RTNETLINK answers: Operation not permitted")
            return subprocess.CompletedProcess(cmd, 2, "", "RTNETLINK answers: Operation not permitted")
        args = cmd[1:]
        if args[:2] == ["link", "add"]:
            self.links[args[3]] = None
        elif args[:2] == ["tuntap", "add"]:
            self.links[args[3]] = None
        elif args[:2] == ["link", "del"]:
            if args[2] not in self.links:
                return subprocess.CompletedProcess(cmd, 1, "", f'Cannot find device "{args[2]}"')
            del self.links[args[2]]
            for device, master in list(self.links.items()):
                if master == args[2]:
                    self.links[device] = None
        elif args[:2] == ["link", "set"] and "master" in args:
            self.links[args[2]] = args[args.index("master") + 1]
        elif args[:3] == ["-j", "link", "show"]:
            master = args[-1]
            entries = [{"ifname": device} for device, owner in self.links.items() if owner == master]
            return subprocess.CompletedProcess(cmd, 0, json.dumps(entries), "")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def ran(self, fragment: str) -> bool:
        return any(fragment in " ".join(cmd) for cmd in self.commands)


@pytest.fixture
def fake_ip(monkeypatch) -> FakeIp:
    fake = FakeIp()
    monkeypatch.setattr("vsim.fabric._FABRICS", {})
    monkeypatch.setattr("vsim.fabric.run", fake)
    monkeypatch.setattr("vsim.fabric.interface_exists", lambda name: name in fake.links)
    return fake


@pytest.fixture
def dnsmasq_cls(monkeypatch) -> MagicMock:
    cls = MagicMock()
    cls.return_value.pid = 77
    monkeypatch.setattr("vsim.fabric.DnsmasqService", cls)
    return cls


@pytest.fixture
def spec() -> FabricSpec:
    return FabricSpec(
        name="vsimbr0",
        subnet=IPv4Network("10.0.0.0/24"),
        gateway=IPv4Address("10.0.0.1"),
        dhcp_range=(IPv4Address("10.0.0.100"), IPv4Address("10.0.0.200")),
    )


@pytest.fixture
def fabric(tmp_path, fake_ip, dnsmasq_cls) -> VirtualSwitchFabric:
    return VirtualSwitchFabric(state_root=tmp_path)


class TestNames:
    def test_port_device_name(self):
        assert port_device_name("vsimbr0", 3) == "vsimbr0p3"

    def test_port_device_name_too_long(self):
        with pytest.raises(TopologyError, match="exceeds 15 characters"):
            port_device_name("averylongbridge", 10)

    def test_port_mac_is_stable_per_node(self):
        assert port_mac("vsimbr0", "a") == port_mac("vsimbr0", "a")
        assert port_mac("vsimbr0", "a") != port_mac("vsimbr0", "b")


class TestCreateFabric:
    def test_creates_bridge_and_responder(self, fabric, fake_ip, dnsmasq_cls, spec, tmp_path):
        handle = fabric.create_fabric(spec)
        assert handle.name == "vsimbr0"
        assert handle.dhcp_pid == 77
        assert handle.state_dir == tmp_path / "fabrics" / "vsimbr0"
        assert handle.state_dir.is_dir()
        assert fake_ip.ran("ip link add name vsimbr0 type bridge")
        assert fake_ip.ran("ip addr add 10.0.0.1/24 dev vsimbr0")
        assert fake_ip.ran("ip link set vsimbr0 up")
        dnsmasq_cls.return_value.start.assert_called_once()

    def test_same_name_twice_conflicts(self, fabric, spec):
        fabric.create_fabric(spec)
        with pytest.raises(ResourceConflict, match="already exists in this session"):
            fabric.create_fabric(spec)

    def test_existing_host_device_conflicts(self, fabric, fake_ip, spec):
        fake_ip.links["vsimbr0"] = None
        with pytest.raises(ResourceConflict, match="already exists on this host"):
            fabric.create_fabric(spec)
        assert not fake_ip.ran("link add")

    def test_failure_rolls_back(self, fabric, fake_ip, spec, tmp_path):
        fake_ip.fail_on = "addr add"
        with pytest.raises(ManagerError, match="ip addr add"):
            fabric.create_fabric(spec)
        assert "vsimbr0" not in fake_ip.links
        assert not (tmp_path / "fabrics" / "vsimbr0").exists()
        # The name is free again once the rollback completed.
        fake_ip.fail_on = None
        assert fabric.create_fabric(spec).name == "vsimbr0"

    def test_responder_failure_removes_bridge(self, fabric, fake_ip, dnsmasq_cls, spec):
        dnsmasq_cls.return_value.start.side_effect = ManagerError("dnsmasq exited prematurely (code 2)")
        with pytest.raises(ManagerError, match="dnsmasq"):
            fabric.create_fabric(spec)
        assert "vsimbr0" not in fake_ip.links

    def test_cancelled(self, fabric, fake_ip, spec):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            fabric.create_fabric(spec, cancel=cancel)
        assert fake_ip.links == {}


class TestPorts:
    def test_attach(self, fabric, fake_ip, dnsmasq_cls, spec):
        handle = fabric.create_fabric(spec)
        port = fabric.attach_port(handle, LinkSpec("a", 0), IPv4Interface("10.0.0.2/24"))
        assert port.device == "vsimbr0p0"
        assert port.mac == port_mac("vsimbr0", "a")
        assert fake_ip.links["vsimbr0p0"] == "vsimbr0"
        dnsmasq_cls.return_value.add_host.assert_called_once_with(port.mac, "a", IPv4Address("10.0.0.2"))
        assert fabric.list_ports(handle) == ["vsimbr0p0"]
        assert fabric.port_for(handle, "a") == port

    def test_attach_is_idempotent(self, fabric, fake_ip, spec):
        handle = fabric.create_fabric(spec)
        first = fabric.attach_port(handle, LinkSpec("a", 0))
        second = fabric.attach_port(handle, LinkSpec("a", 0))
        assert first == second
        assert sum(1 for cmd in fake_ip.commands if cmd[1:3] == ["tuntap", "add"]) == 1

    def test_port_collision(self, fabric, spec):
        handle = fabric.create_fabric(spec)
        fabric.attach_port(handle, LinkSpec("a", 0))
        with pytest.raises(ResourceConflict, match="already attached to a"):
            fabric.attach_port(handle, LinkSpec("b", 0))

    def test_foreign_device_conflicts(self, fabric, fake_ip, spec):
        handle = fabric.create_fabric(spec)
        fake_ip.links["vsimbr0p0"] = "otherbr"
        with pytest.raises(ResourceConflict, match="outside fabric"):
            fabric.attach_port(handle, LinkSpec("a", 0))

    def test_attach_failure_removes_tap(self, fabric, fake_ip, spec):
        handle = fabric.create_fabric(spec)
        fake_ip.fail_on = "master vsimbr0"
        with pytest.raises(ManagerError):
            fabric.attach_port(handle, LinkSpec("a", 0))
        assert "vsimbr0p0" not in fake_ip.links

    def test_attach_to_unknown_fabric(self, fabric, spec):
        handle = fabric.create_fabric(spec)
        fabric.destroy_fabric(handle)
        with pytest.raises(NotFound):
            fabric.attach_port(handle, LinkSpec("a", 0))

    def test_detach(self, fabric, fake_ip, dnsmasq_cls, spec):
        handle = fabric.create_fabric(spec)
        port = fabric.attach_port(handle, LinkSpec("a", 0))
        fabric.attach_port(handle, LinkSpec("b", 1))
        fabric.detach_port(handle, port)
        assert fabric.list_ports(handle) == ["vsimbr0p1"]
        assert fabric.port_for(handle, "a") is None
        dnsmasq_cls.return_value.remove_host.assert_called_with(port.mac)

    def test_detach_twice_is_tolerated(self, fabric, spec, capsys):
        handle = fabric.create_fabric(spec)
        port = fabric.attach_port(handle, LinkSpec("a", 0))
        fabric.detach_port(handle, port)
        fabric.detach_port(handle, port)
        assert "already removed" in capsys.readouterr().out


class TestDestroyFabric:
    def test_removes_everything(self, fabric, fake_ip, dnsmasq_cls, spec):
        handle = fabric.create_fabric(spec)
        fabric.attach_port(handle, LinkSpec("a", 0))
        fabric.attach_port(handle, LinkSpec("b", 1))
        fabric.destroy_fabric(handle)
        assert fake_ip.links == {}
        assert not handle.state_dir.exists()
        dnsmasq_cls.return_value.stop.assert_called_once()

    def test_destroy_twice(self, fabric, spec, capsys):
        handle = fabric.create_fabric(spec)
        fabric.destroy_fabric(handle)
        fabric.destroy_fabric(handle)
        assert "already removed" in capsys.readouterr().out

    def test_adopt_keeps_present_ports(self, fabric, fake_ip, dnsmasq_cls, spec):
        handle = fabric.create_fabric(spec)
        port_a = fabric.attach_port(handle, LinkSpec("a", 0))
        port_b = fabric.attach_port(handle, LinkSpec("b", 1))
        # A fresh controller process knows nothing about the fabric.
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("vsim.fabric._FABRICS", {})
            del fake_ip.links["vsimbr0p1"]
            fabric.adopt(handle, [port_a, port_b])
            assert fabric.ports(handle) == {"a": port_a}
            dnsmasq_cls.return_value.adopt.assert_called_once_with(77)
