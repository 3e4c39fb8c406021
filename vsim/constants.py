"""Global constants and path configuration for vsim."""

from __future__ import annotations

import os
import re
from pathlib import Path

STATE_DIR = Path(os.environ.get("VSIM_STATE_DIR", "/var/lib/vsim"))
SESSION_FILE_NAME = "session.json"
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

# Linux limits interface names to 15 characters (IFNAMSIZ - 1).
IFNAME_MAX = 15
IFNAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
NODE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")

DEFAULT_BRIDGE = "vsimbr0"
DEFAULT_SUBNET = "192.168.100.0/24"
DEFAULT_DNS_DOMAIN = "local"
DHCP_LEASE_TIME = "12h"

# Keys are libvirt architecture names; topology files use amd64/arm64.
SUPPORTED_ARCHES = {
    "x86_64": {
        "machine": "pc",
        "features": ("acpi", "apic"),
        "tcg_model": "qemu64",
        "emulator": "qemu-system-x86_64",
    },
    "aarch64": {
        "machine": "virt",
        "features": ("acpi",),
        "gic_version": "3",
        "tcg_model": "cortex-a57",
        "emulator": "qemu-system-aarch64",
        "firmware": {
            "loader": Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
            "vars_template": Path("/usr/share/AAVMF/AAVMF_VARS.fd"),
        },
    },
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}

# Host-side names reported by platform.machine().
HOST_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}

EMULATION_SLOWDOWN = "10-20x slower"

# Guest-side agent emits this exact line once it owns /dev/hvc0.
HANDSHAKE_MARKER = "Spawning backdoor root shell..."
GUEST_CONSOLE_DEVICE = "/dev/hvc0"
# Split with an empty string literal so the shell's output never equals the
# command text that carried it.
COMMAND_SENTINEL = "__VSIM_EOC__"
COMMAND_SENTINEL_SPLIT = '__VSIM""_EOC__'

DEFAULT_PROFILE = "default"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]i?B?|[kmgt]i?b?)?\s*$")
RATE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(bit|kbit|mbit|gbit)?\s*$", re.IGNORECASE)
DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(us|ms|s)?\s*$", re.IGNORECASE)
