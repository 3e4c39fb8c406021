"""Utility functions for vsim."""

from __future__ import annotations

import hashlib
import os
import platform
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from vsim.constants import (
    _LOG_VERBOSE,
    DURATION_RE,
    HOST_ARCH_ALIASES,
    MEMORY_RE,
    RATE_RE,
    TRUTHY,
)
from vsim.exceptions import Cancelled, ManagerError

_log_guard = threading.Lock()


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    # Guests are brought up from worker threads; keep lines whole.
    with _log_guard:
        print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_memory_mib(raw) -> int:
    """Convert '4Gi', '2048Mi', '4G' or a bare MiB count into MiB."""
    if isinstance(raw, bool):
        raise ManagerError(f"Invalid memory size '{raw}'")
    if isinstance(raw, int):
        if raw <= 0:
            raise ManagerError(f"Memory size must be positive (got {raw})")
        return raw
    match = MEMORY_RE.match(str(raw))
    if not match:
        raise ManagerError(f"Invalid memory size '{raw}'. Use a number with optional suffix: Mi, Gi, Ti (e.g. '4Gi')")
    number = float(match.group(1))
    unit = (match.group(2) or "M")[0].upper()
    factors = {"K": 1 / 1024, "M": 1, "G": 1024, "T": 1024 * 1024}
    mib = int(number * factors[unit])
    if mib <= 0:
        raise ManagerError(f"Memory size '{raw}' is below 1 MiB")
    return mib


def parse_rate_kbit(raw) -> int:
    """Convert a tc-style rate ('100mbit', '512kbit') into kbit/s. Bare numbers are kbit."""
    if isinstance(raw, bool):
        raise ManagerError(f"Invalid bandwidth '{raw}'")
    if isinstance(raw, (int, float)):
        return int(raw)
    text = str(raw).strip()
    negative = text.startswith("-")
    match = RATE_RE.match(text.lstrip("-"))
    if not match:
        raise ManagerError(f"Invalid bandwidth '{raw}'. Use bit, kbit, mbit or gbit (e.g. '100mbit')")
    number = float(match.group(1))
    unit = (match.group(2) or "kbit").lower()
    factors = {"bit": 0.001, "kbit": 1, "mbit": 1000, "gbit": 1000 * 1000}
    value = int(number * factors[unit])
    return -value if negative else value


def parse_duration_ms(raw) -> float:
    """Convert a tc-style duration ('20ms', '1s', '500us') into milliseconds. Bare numbers are ms."""
    if isinstance(raw, bool):
        raise ManagerError(f"Invalid duration '{raw}'")
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    negative = text.startswith("-")
    match = DURATION_RE.match(text.lstrip("-"))
    if not match:
        raise ManagerError(f"Invalid duration '{raw}'. Use us, ms or s (e.g. '20ms')")
    number = float(match.group(1))
    unit = (match.group(2) or "ms").lower()
    factors = {"us": 0.001, "ms": 1.0, "s": 1000.0}
    value = number * factors[unit]
    return -value if negative else value


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def host_architecture() -> str:
    """Return the libvirt architecture name of the machine we run on."""
    machine = platform.machine().lower()
    return HOST_ARCH_ALIASES.get(machine, machine)


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def wait_for_path(
    path: Path,
    timeout: float = 10.0,
    interval: float = 0.1,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Poll for a filesystem path to show up (e.g., a console socket)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if path.exists():
            return True
        check_cancelled(cancel, f"waiting for {path}")
        time.sleep(interval)
    return path.exists()


def check_cancelled(cancel: Optional[threading.Event], what: str) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"Cancelled while {what}")


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def interface_exists(name: str) -> bool:
    return Path("/sys/class/net", name).exists()


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
