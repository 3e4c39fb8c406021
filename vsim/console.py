"""Console control protocol over a guest's virtio console.

The guest-side agent (see :data:`GUEST_AGENT_SCRIPT`) owns ``/dev/hvc0``,
silences kernel output on it, switches it to raw mode, prints the handshake
marker once per boot and then execs a bare shell. The host side of that
console is a unix socket created by QEMU; a :class:`ConsoleChannel` keeps one
connection to it per boot so the marker is not lost between command batches.

Wire format per command::

    printf '\\n'; ( eval "$(printf %s '<base64 command>' | base64 -d)" ) </dev/null | base64 -w 0; echo " <sentinel> ${PIPESTATUS[0]}"

The reply is ``\\n<base64 stdout> <sentinel> <exit code>\\n``; the sentinel is
split with an empty string literal on the way in so that only the shell's
output can ever contain it.
"""

from __future__ import annotations

import base64
import binascii
import re
import secrets
import socket
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Tuple

import pexpect
from pexpect import fdpexpect

from vsim.constants import (
    COMMAND_SENTINEL,
    COMMAND_SENTINEL_SPLIT,
    GUEST_CONSOLE_DEVICE,
    HANDSHAKE_MARKER,
)
from vsim.exceptions import Cancelled, CommandTimeout, ConsoleError, HandshakeTimeout
from vsim.models import ConsoleState, GuestDomain
from vsim.utils import check_cancelled, log, wait_for_path

_RESULT_RE = re.compile(r"\r?\n([A-Za-z0-9+/=]*) " + re.escape(COMMAND_SENTINEL) + r" (\d+)\r?\n")

# Reads are sliced so cancellation and invalidation are noticed promptly.
_READ_SLICE = 0.25

GUEST_AGENT_SCRIPT = f"""#!/bin/bash
# vsim console agent: must own {GUEST_CONSOLE_DEVICE} before any other console consumer.
cd /tmp

# Kernel and init messages on the console corrupt the protocol stream.
if [ -e /proc/sys/kernel/printk_devkmsg ]; then
    echo off > /proc/sys/kernel/printk_devkmsg 2>/dev/null || true
fi
echo 1 > /proc/sys/kernel/printk 2>/dev/null || true

exec < {GUEST_CONSOLE_DEVICE} > {GUEST_CONSOLE_DEVICE}
# stderr goes to the serial console when there is one
if [ -e /dev/ttyS0 ]; then
    exec 2> /dev/ttyS0
else
    exec 2> /dev/null
fi

stty -F {GUEST_CONSOLE_DEVICE} raw -echo

echo "{HANDSHAKE_MARKER}"
PS1="" exec bash --norc
"""


def wrap_command(command: str) -> str:
    """Render the single line sent to the guest shell for ``command``."""
    encoded = base64.b64encode(command.encode("utf-8")).decode("ascii")
    return (
        "printf '\\n'; "
        f"( eval \"$(printf %s '{encoded}' | base64 -d)\" ) </dev/null | base64 -w 0; "
        f'echo " {COMMAND_SENTINEL_SPLIT} ${{PIPESTATUS[0]}}"\n'
    )


class _NoReply(Exception):
    """No complete reply frame arrived before the deadline."""


class ConsoleChannel:
    """Connection to one guest console for the lifetime of a boot.

    ``resumed`` marks a guest whose one-time marker is already gone, either
    because it booted under an earlier controller process or because this
    channel consumed it before a reconnect. The handshake is then replaced by
    a sync command; its framed reply, carrying a fresh token, proves the
    agent's shell owns the device and skips any frame left over from a
    command that was abandoned mid-flight.
    """

    def __init__(
        self,
        name: str,
        socket_path: Path,
        connect_timeout: float = 30.0,
        resumed: bool = False,
    ) -> None:
        self.name = name
        self.socket_path = socket_path
        self.connect_timeout = connect_timeout
        self.resumed = resumed
        self.state = ConsoleState.WAITING_FOR_DEVICE
        self.child: Optional[fdpexpect.fdspawn] = None
        # Capability token: only its holder may write to the device.
        self.token = threading.Lock()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _connect(self, cancel: Optional[threading.Event]) -> None:
        self.state = ConsoleState.WAITING_FOR_DEVICE
        if not wait_for_path(self.socket_path, timeout=self.connect_timeout, cancel=cancel):
            raise ConsoleError(f"Console device for {self.name} did not appear at {self.socket_path}")
        deadline = time.time() + self.connect_timeout
        while True:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(str(self.socket_path))
                break
            except (ConnectionRefusedError, FileNotFoundError) as exc:
                sock.close()
                if time.time() >= deadline:
                    raise ConsoleError(f"Could not connect to console of {self.name}: {exc}") from exc
                check_cancelled(cancel, f"connecting to console of {self.name}")
                time.sleep(0.2)
            except OSError:
                sock.close()
                raise
        self.child = fdpexpect.fdspawn(sock.detach(), encoding="utf-8", codec_errors="replace")
        self.state = ConsoleState.REDIRECTING
        log("DEBUG", f"Connected to console of {self.name} ({self.socket_path})")

    def handshake(self, timeout: float, cancel: Optional[threading.Event] = None) -> None:
        """Connect if needed and block until the exact handshake marker is read."""
        if self.closed:
            raise ConsoleError(f"Console of {self.name} is closed")
        if self.state is ConsoleState.SHELL_ACTIVE:
            return
        deadline = time.time() + timeout
        if self.child is None:
            self._connect(cancel)
        self.state = ConsoleState.HANDSHAKE

        if self.resumed:
            self._resync(deadline, timeout, cancel)
            self.state = ConsoleState.SHELL_ACTIVE
            log("DEBUG", f"Re-synchronised with console agent on {self.name}")
            return

        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                self._teardown(ConsoleState.HANDSHAKE_TIMEOUT)
                raise HandshakeTimeout(
                    f"Guest agent on {self.name} did not send the handshake marker within {int(timeout)}s"
                )
            self._check_interrupted(cancel, "waiting for the console handshake")
            try:
                self.child.expect_exact(HANDSHAKE_MARKER, timeout=min(_READ_SLICE, remaining))  # type: ignore[union-attr]
            except pexpect.TIMEOUT:
                continue
            except (pexpect.EOF, OSError) as exc:
                self._teardown(ConsoleState.CLOSED)
                raise ConsoleError(f"Console of {self.name} closed during handshake") from exc
            break
        # The marker is printed once per boot; any reconnect has to re-sync.
        self.resumed = True
        self.state = ConsoleState.SHELL_ACTIVE
        log("DEBUG", f"Console handshake with {self.name} complete")

    def _resync(self, deadline: float, timeout: float, cancel: Optional[threading.Event]) -> None:
        token = secrets.token_hex(8)
        self._drain()
        self._send(wrap_command(f"echo {token}"))
        while True:
            try:
                payload, _ = self._await_reply(deadline, cancel, "re-synchronising with the console agent")
            except _NoReply:
                self._teardown(ConsoleState.HANDSHAKE_TIMEOUT)
                raise HandshakeTimeout(
                    f"Console agent on {self.name} did not answer within {int(timeout)}s"
                ) from None
            if self._decode(payload) == f"{token}\n":
                return
            log("DEBUG", f"Discarding a stale reply on the console of {self.name}")

    def run(self, command: str, timeout: float, cancel: Optional[threading.Event] = None) -> Tuple[str, int]:
        """Execute one command in the guest shell; returns (stdout, exit code)."""
        if self.state is not ConsoleState.SHELL_ACTIVE or self.child is None:
            raise ConsoleError(f"Console of {self.name} has no active shell ({self.state.value})")
        self._drain()
        self._send(wrap_command(command))
        try:
            payload, status = self._await_reply(time.time() + timeout, cancel, "running a console command")
        except _NoReply:
            self._teardown(ConsoleState.COMMAND_TIMEOUT)
            raise CommandTimeout(f"Command on {self.name} did not complete within {int(timeout)}s") from None
        return self._decode(payload), status

    def _decode(self, payload: str) -> str:
        try:
            return base64.b64decode(payload, validate=True).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError) as exc:
            self._teardown(ConsoleState.CLOSED)
            raise ConsoleError(f"Corrupted command output on console of {self.name}") from exc

    def _send(self, line: str) -> None:
        try:
            self.child.send(line)  # type: ignore[union-attr]
        except OSError as exc:
            self._teardown(ConsoleState.CLOSED)
            raise ConsoleError(f"Failed to write to console of {self.name}: {exc}") from exc

    def _await_reply(self, deadline: float, cancel: Optional[threading.Event], what: str) -> Tuple[str, int]:
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise _NoReply()
            try:
                self._check_interrupted(cancel, what)
            except Cancelled:
                # The shell is mid-command; the stream cannot be trusted any more.
                self._teardown(ConsoleState.CLOSED)
                raise
            try:
                self.child.expect(_RESULT_RE, timeout=min(_READ_SLICE, remaining))  # type: ignore[union-attr]
            except pexpect.TIMEOUT:
                continue
            except (pexpect.EOF, OSError) as exc:
                self._teardown(ConsoleState.CLOSED)
                raise ConsoleError(f"Console of {self.name} closed while {what}") from exc
            match = self.child.match  # type: ignore[union-attr]
            return match.group(1), int(match.group(2))

    def _drain(self) -> None:
        """Discard anything the shell printed outside a command frame."""
        assert self.child is not None
        self.child.buffer = self.child.string_type()
        while True:
            try:
                self.child.read_nonblocking(4096, timeout=0)
            except pexpect.TIMEOUT:
                return
            except (pexpect.EOF, OSError) as exc:
                self._teardown(ConsoleState.CLOSED)
                raise ConsoleError(f"Console of {self.name} closed") from exc

    def _check_interrupted(self, cancel: Optional[threading.Event], what: str) -> None:
        if self.closed:
            raise ConsoleError(f"Console of {self.name} was closed while {what}")
        check_cancelled(cancel, what)

    def _teardown(self, state: ConsoleState) -> None:
        child, self.child = self.child, None
        if child is not None:
            try:
                child.close()
            except OSError:
                log("DEBUG", f"Console fd of {self.name} already closed")
        self.state = state

    def close(self) -> None:
        """Close for good; the guest stopped or was destroyed."""
        self._closed.set()
        self._teardown(ConsoleState.CLOSED)


class ConsoleSession:
    """Holder of a channel's capability token for one command batch.

    Use as a context manager; the token is released on exit even if a
    command failed.
    """

    def __init__(
        self,
        channel: ConsoleChannel,
        handshake_timeout: float,
        exec_timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.channel = channel
        self.handshake_timeout = handshake_timeout
        self.exec_timeout = exec_timeout
        self.cancel = cancel
        self._held = False

    def __enter__(self) -> "ConsoleSession":
        deadline = time.time() + self.exec_timeout
        while not self.channel.token.acquire(timeout=_READ_SLICE):
            check_cancelled(self.cancel, f"waiting for the console of {self.channel.name}")
            if time.time() >= deadline:
                raise ConsoleError(f"Console of {self.channel.name} is busy")
        self._held = True
        try:
            self.channel.handshake(self.handshake_timeout, self.cancel)
        except BaseException:
            self._release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._release()

    def _release(self) -> None:
        if self._held:
            self._held = False
            self.channel.token.release()

    def exec(self, command: str, timeout: Optional[float] = None) -> Tuple[str, int]:
        if not self._held:
            raise ConsoleError("Console session is not open")
        result = self.channel.run(command, timeout if timeout is not None else self.exec_timeout, self.cancel)
        log("DEBUG", f"{self.channel.name}$ {command} -> exit {result[1]}")
        return result


class ConsoleRegistry:
    """One channel per running guest, shared by every caller of that guest."""

    def __init__(self, handshake_timeout: float = 60.0, exec_timeout: float = 120.0, connect_timeout: float = 30.0) -> None:
        self.handshake_timeout = handshake_timeout
        self.exec_timeout = exec_timeout
        self.connect_timeout = connect_timeout
        self._channels: Dict[str, ConsoleChannel] = {}
        self._resumed: set = set()
        self._guard = threading.Lock()

    def mark_resumed(self, name: str) -> None:
        """The guest booted under an earlier controller; its marker was already consumed."""
        with self._guard:
            self._resumed.add(name)

    def channel(self, name: str, socket_path: Path) -> ConsoleChannel:
        with self._guard:
            channel = self._channels.get(name)
            if channel is None or channel.closed:
                channel = ConsoleChannel(
                    name,
                    socket_path,
                    connect_timeout=self.connect_timeout,
                    resumed=name in self._resumed,
                )
                self._channels[name] = channel
            return channel

    def session(self, domain: GuestDomain, cancel: Optional[threading.Event] = None) -> ConsoleSession:
        channel = self.channel(domain.name, Path(domain.descriptor.console_path))
        return ConsoleSession(channel, self.handshake_timeout, self.exec_timeout, cancel)

    def exec(
        self,
        domain: GuestDomain,
        command: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[str, int]:
        with self.session(domain, cancel) as session:
            return session.exec(command, timeout)

    def probe(self, domain: GuestDomain, timeout: float, cancel: Optional[threading.Event] = None) -> None:
        """Readiness probe for a freshly started guest: wait for its handshake."""
        channel = self.channel(domain.name, Path(domain.descriptor.console_path))
        with ConsoleSession(channel, timeout, self.exec_timeout, cancel):
            log("INFO", f"Console agent on {domain.name} is up")

    def state(self, name: str) -> Optional[ConsoleState]:
        with self._guard:
            channel = self._channels.get(name)
        if channel is None:
            return None
        return channel.state

    def invalidate(self, name: str) -> None:
        """Drop the channel of a guest that powered off; the next boot gets a fresh one."""
        with self._guard:
            channel = self._channels.pop(name, None)
            self._resumed.discard(name)
        if channel is not None:
            channel.close()
            log("DEBUG", f"Console channel of {name} closed")

    def close_all(self) -> None:
        with self._guard:
            names = list(self._channels)
        for name in names:
            self.invalidate(name)
