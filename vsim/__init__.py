"""vsim package: nested-virtualization emulation test-bed for k3s edge clusters."""

__all__ = [
    "cli",
    "config",
    "console",
    "constants",
    "descriptor",
    "exceptions",
    "fabric",
    "hypervisor",
    "lifecycle",
    "models",
    "orchestrator",
    "profiles",
    "services",
    "session",
    "utils",
]
