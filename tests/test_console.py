"""Tests for vsim.console module, driven against a real bash behind a unix socket."""

from __future__ import annotations

import base64
import threading
import time
from types import SimpleNamespace

import pytest

from vsim.console import GUEST_AGENT_SCRIPT, ConsoleChannel, ConsoleRegistry, ConsoleSession, wrap_command
from vsim.constants import COMMAND_SENTINEL, HANDSHAKE_MARKER
from vsim.exceptions import Cancelled, CommandTimeout, ConsoleError, HandshakeTimeout
from vsim.models import ConsoleState, GuestDomain


@pytest.fixture
def socket_path(short_tmp):
    return short_tmp / "consoles" / "a.sock"


@pytest.fixture
def agent(guest_agent, socket_path):
    return guest_agent(socket_path)


@pytest.fixture
def silent_agent(guest_agent, socket_path):
    return guest_agent(socket_path, marker=False)


@pytest.fixture
def channel(agent, socket_path):
    channel = ConsoleChannel("a", socket_path, connect_timeout=2)
    yield channel
    channel.close()


@pytest.fixture
def domain(socket_path):
    descriptor = SimpleNamespace(name="a", console_path=str(socket_path))
    return GuestDomain(node_id="a", descriptor=descriptor)


class TestWireFormat:
    def test_command_is_base64_encoded(self):
        line = wrap_command("echo 'quoted' \"and\" $HOME")
        encoded = base64.b64encode("echo 'quoted' \"and\" $HOME".encode()).decode()
        assert f"'{encoded}'" in line
        assert "$HOME" not in line
        assert line.endswith("\n")
        assert line.count("\n") == 1

    def test_sentinel_not_in_command_text(self):
        assert COMMAND_SENTINEL not in wrap_command("true")

    def test_agent_script(self):
        assert GUEST_AGENT_SCRIPT.startswith("#!/bin/bash")
        assert f'echo "{HANDSHAKE_MARKER}"' in GUEST_AGENT_SCRIPT
        assert "/dev/hvc0" in GUEST_AGENT_SCRIPT
        assert "raw -echo" in GUEST_AGENT_SCRIPT
        assert GUEST_AGENT_SCRIPT.rstrip().endswith("exec bash --norc")


class TestHandshake:
    def test_marker(self, channel):
        channel.handshake(timeout=5)
        assert channel.state is ConsoleState.SHELL_ACTIVE

    def test_handshake_is_idempotent(self, channel, agent):
        channel.handshake(timeout=5)
        channel.handshake(timeout=5)
        assert agent.connections == 1

    def test_timeout_without_marker(self, silent_agent, socket_path):
        channel = ConsoleChannel("a", socket_path, connect_timeout=2)
        try:
            with pytest.raises(HandshakeTimeout, match="handshake marker"):
                channel.handshake(timeout=0.6)
            assert channel.state is ConsoleState.HANDSHAKE_TIMEOUT
            assert channel.child is None
            with pytest.raises(ConsoleError, match="no active shell"):
                channel.run("echo hi", timeout=1)
        finally:
            channel.close()

    def test_missing_device(self, short_tmp):
        channel = ConsoleChannel("a", short_tmp / "missing.sock", connect_timeout=0.3)
        with pytest.raises(ConsoleError, match="did not appear"):
            channel.handshake(timeout=1)
        assert channel.state is ConsoleState.WAITING_FOR_DEVICE

    def test_cancelled_while_waiting(self, silent_agent, socket_path):
        channel = ConsoleChannel("a", socket_path, connect_timeout=2)
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        try:
            with pytest.raises(Cancelled):
                channel.handshake(timeout=10, cancel=cancel)
        finally:
            channel.close()

    def test_resumed_channel_resyncs_without_marker(self, channel, agent, socket_path):
        channel.handshake(timeout=5)
        # A later controller process: the marker was consumed by the first connection.
        later = ConsoleChannel("a", socket_path, connect_timeout=2, resumed=True)
        try:
            later.handshake(timeout=5)
            assert later.state is ConsoleState.SHELL_ACTIVE
            assert later.run("echo resumed", timeout=5) == ("resumed\n", 0)
        finally:
            later.close()
        assert agent.connections == 2

    def test_resync_skips_stale_reply(self, channel):
        channel.handshake(timeout=5)
        # Reply of an abandoned command still in flight when the sync is sent.
        channel._send(wrap_command("sleep 0.5; echo stale"))
        channel._resync(time.time() + 5, 5, None)
        assert channel.run("echo fresh", timeout=5) == ("fresh\n", 0)

    def test_closed_channel_refuses(self, channel):
        channel.close()
        with pytest.raises(ConsoleError, match="closed"):
            channel.handshake(timeout=1)


class TestRun:
    def test_echo(self, channel):
        channel.handshake(timeout=5)
        assert channel.run("echo hi", timeout=5) == ("hi\n", 0)

    def test_exit_codes(self, channel):
        channel.handshake(timeout=5)
        assert channel.run("false", timeout=5) == ("", 1)
        assert channel.run("exit 3", timeout=5) == ("", 3)
        assert channel.run("true", timeout=5) == ("", 0)

    def test_stdout_only(self, channel):
        channel.handshake(timeout=5)
        assert channel.run("echo out; echo err >&2", timeout=5) == ("out\n", 0)

    def test_quoting_and_multiline(self, channel):
        channel.handshake(timeout=5)
        stdout, status = channel.run("printf '%s\\n' \"a b\" 'c'\"'\"'d'", timeout=5)
        assert (stdout, status) == ("a b\nc'd\n", 0)

    def test_output_containing_sentinel(self, channel):
        channel.handshake(timeout=5)
        stdout, status = channel.run(f"echo '{COMMAND_SENTINEL} 99'", timeout=5)
        assert (stdout, status) == (f"{COMMAND_SENTINEL} 99\n", 0)

    def test_results_stay_in_order(self, channel):
        channel.handshake(timeout=5)
        results = [channel.run(f"echo {i}; exit {i % 4}", timeout=5) for i in range(10)]
        assert results == [(f"{i}\n", i % 4) for i in range(10)]

    def test_command_timeout(self, channel):
        channel.handshake(timeout=5)
        with pytest.raises(CommandTimeout, match="did not complete within 1s"):
            channel.run("sleep 3", timeout=1)
        assert channel.state is ConsoleState.COMMAND_TIMEOUT
        assert channel.child is None
        with pytest.raises(ConsoleError, match="no active shell"):
            channel.run("echo hi", timeout=1)

    def test_console_usable_after_command_timeout(self, channel, agent):
        channel.handshake(timeout=5)
        assert channel.run("echo hi", timeout=5) == ("hi\n", 0)
        with pytest.raises(CommandTimeout):
            channel.run("sleep 30", timeout=1)
        # The marker is not sent again on this boot.
        with ConsoleSession(channel, handshake_timeout=5, exec_timeout=5) as session:
            assert session.exec("echo again") == ("again\n", 0)
        assert agent.connections == 2

    def test_console_usable_after_cancel(self, channel):
        channel.handshake(timeout=5)
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        with pytest.raises(Cancelled):
            channel.run("sleep 30", timeout=10, cancel=cancel)
        channel.handshake(timeout=5)
        assert channel.run("echo back", timeout=5) == ("back\n", 0)

    def test_cancel_mid_command(self, channel):
        channel.handshake(timeout=5)
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        with pytest.raises(Cancelled):
            channel.run("sleep 3", timeout=10, cancel=cancel)
        assert channel.state is ConsoleState.CLOSED

    def test_shell_exit_closes_channel(self, channel, agent):
        channel.handshake(timeout=5)
        agent.stop()
        with pytest.raises(ConsoleError, match="closed"):
            channel.run("echo hi", timeout=5)
        assert channel.state is ConsoleState.CLOSED


class TestSession:
    def test_busy_token(self, channel):
        channel.token.acquire()
        try:
            with pytest.raises(ConsoleError, match="busy"):
                with ConsoleSession(channel, handshake_timeout=1, exec_timeout=0.5):
                    pass
        finally:
            channel.token.release()

    def test_token_released_after_failure(self, channel):
        with ConsoleSession(channel, handshake_timeout=5, exec_timeout=1) as session:
            with pytest.raises(CommandTimeout):
                session.exec("sleep 3")
        assert channel.token.acquire(blocking=False)
        channel.token.release()

    def test_token_released_after_handshake_failure(self, silent_agent, socket_path):
        channel = ConsoleChannel("a", socket_path, connect_timeout=2)
        try:
            with pytest.raises(HandshakeTimeout):
                with ConsoleSession(channel, handshake_timeout=0.5, exec_timeout=5):
                    pass
            assert channel.token.acquire(blocking=False)
            channel.token.release()
        finally:
            channel.close()

    def test_exec_outside_session(self, channel):
        session = ConsoleSession(channel, handshake_timeout=5, exec_timeout=5)
        with pytest.raises(ConsoleError, match="not open"):
            session.exec("true")

    def test_batches_are_serialised(self, channel):
        channel.handshake(timeout=5)
        results = {}

        def batch(tag):
            with ConsoleSession(channel, handshake_timeout=5, exec_timeout=10) as session:
                results[tag] = [session.exec(f"echo {tag}{i}") for i in range(3)]

        threads = [threading.Thread(target=batch, args=(tag,)) for tag in ("x", "y", "z")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        for tag in ("x", "y", "z"):
            assert results[tag] == [(f"{tag}{i}\n", 0) for i in range(3)]


class TestRegistry:
    def test_exec(self, agent, domain):
        registry = ConsoleRegistry(handshake_timeout=5, exec_timeout=5, connect_timeout=2)
        try:
            assert registry.exec(domain, "echo hi") == ("hi\n", 0)
            assert registry.exec(domain, "uname -s")[1] == 0
            assert registry.state("a") is ConsoleState.SHELL_ACTIVE
            assert agent.connections == 1
        finally:
            registry.close_all()

    def test_probe(self, agent, domain):
        registry = ConsoleRegistry(connect_timeout=2)
        try:
            registry.probe(domain, timeout=5)
            assert registry.state("a") is ConsoleState.SHELL_ACTIVE
        finally:
            registry.close_all()

    def test_probe_timeout(self, silent_agent, domain):
        registry = ConsoleRegistry(connect_timeout=2)
        try:
            with pytest.raises(HandshakeTimeout):
                registry.probe(domain, timeout=0.5)
            assert registry.state("a") is ConsoleState.HANDSHAKE_TIMEOUT
        finally:
            registry.close_all()

    def test_unknown_state(self):
        assert ConsoleRegistry().state("nope") is None

    def test_invalidate_gives_fresh_channel(self, agent, domain):
        registry = ConsoleRegistry(handshake_timeout=5, exec_timeout=5, connect_timeout=2)
        try:
            first = registry.channel("a", domain.descriptor.console_path)
            registry.invalidate("a")
            assert first.closed
            assert registry.state("a") is None
            assert registry.channel("a", domain.descriptor.console_path) is not first
        finally:
            registry.close_all()

    def test_mark_resumed(self, agent, domain):
        registry = ConsoleRegistry(handshake_timeout=5, exec_timeout=5, connect_timeout=2)
        try:
            # Consume the one-time marker, as the controller that booted the guest did.
            first = ConsoleRegistry(handshake_timeout=5, connect_timeout=2)
            first.probe(domain, timeout=5)
            first.close_all()
            registry.mark_resumed("a")
            assert registry.exec(domain, "echo again") == ("again\n", 0)
        finally:
            registry.close_all()
