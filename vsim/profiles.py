"""Impairment profiles and their application to fabric ports via tc/netem."""

from __future__ import annotations

import subprocess
import threading
from typing import Dict, List, Mapping, Optional, Union

from vsim.constants import DEFAULT_PROFILE
from vsim.exceptions import InvalidProfile, ManagerError
from vsim.models import ImpairmentProfile, PortHandle
from vsim.utils import log, parse_duration_ms, parse_rate_kbit, run

# The n3x tc scripts shape each node differently; a port profile takes the
# second control-plane node (n100-2) row of each table.
BUILTIN_PROFILES: Dict[str, ImpairmentProfile] = {
    DEFAULT_PROFILE: ImpairmentProfile(
        name=DEFAULT_PROFILE,
        description="No constraints (full speed)",
    ),
    "constrained": ImpairmentProfile(
        name="constrained",
        bandwidth_kbit=100_000,
        latency_ms=10.0,
        description="Embedded system uplink (100Mbps, 10ms latency)",
    ),
    "lossy": ImpairmentProfile(
        name="lossy",
        latency_ms=20.0,
        jitter_ms=10.0,
        loss=0.01,
        description="Unreliable network (1% loss, 20+-10ms delay)",
    ),
}

_NO_QDISC_MARKERS = ("no such file or directory", "handle of zero", "invalid handle")


def profile_from_dict(name: str, data: Mapping) -> ImpairmentProfile:
    """Build a profile from a topology ``profiles:`` entry.

    Values use tc notation (``100mbit``, ``20ms``); loss is a probability in
    [0, 1]. Range checks are left to :func:`validate_profile` so that a bad
    profile is reported with the name it was declared under.
    """
    if name == DEFAULT_PROFILE:
        raise InvalidProfile(f"Profile name '{DEFAULT_PROFILE}' is reserved for 'no impairment'")
    if not isinstance(data, Mapping):
        raise InvalidProfile(f"Profile '{name}' must be a mapping")
    unknown = set(data) - {"bandwidth", "latency", "jitter", "loss", "description"}
    if unknown:
        raise InvalidProfile(f"Profile '{name}' has unknown keys: {', '.join(sorted(unknown))}")
    try:
        bandwidth = parse_rate_kbit(data["bandwidth"]) if data.get("bandwidth") is not None else None
        latency = parse_duration_ms(data["latency"]) if data.get("latency") is not None else None
        jitter = parse_duration_ms(data["jitter"]) if data.get("jitter") is not None else None
        loss = float(data["loss"]) if data.get("loss") is not None else None
    except (ManagerError, TypeError, ValueError) as exc:
        raise InvalidProfile(f"Profile '{name}': {exc}") from exc
    profile = ImpairmentProfile(
        name=name,
        bandwidth_kbit=bandwidth,
        latency_ms=latency,
        jitter_ms=jitter,
        loss=loss,
        description=str(data.get("description", "")),
    )
    validate_profile(profile)
    return profile


def validate_profile(profile: ImpairmentProfile) -> None:
    if profile.bandwidth_kbit is not None and profile.bandwidth_kbit <= 0:
        raise InvalidProfile(f"Profile '{profile.name}': bandwidth must be positive (got {profile.bandwidth_kbit}kbit)")
    if profile.latency_ms is not None and profile.latency_ms < 0:
        raise InvalidProfile(f"Profile '{profile.name}': latency must not be negative")
    if profile.jitter_ms is not None:
        if profile.jitter_ms < 0:
            raise InvalidProfile(f"Profile '{profile.name}': jitter must not be negative")
        if profile.jitter_ms > 0 and not profile.latency_ms:
            raise InvalidProfile(f"Profile '{profile.name}': jitter requires a latency")
    if profile.loss is not None and not 0.0 <= profile.loss <= 1.0:
        raise InvalidProfile(f"Profile '{profile.name}': loss must be a probability in [0, 1] (got {profile.loss})")


def _fmt_ms(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value)}ms"
    return f"{int(round(value * 1000))}us"


def netem_args(profile: ImpairmentProfile) -> List[str]:
    """Render the netem option vector for a profile (empty for a clear profile)."""
    args: List[str] = []
    if profile.latency_ms is not None:
        args += ["delay", _fmt_ms(profile.latency_ms)]
        if profile.jitter_ms:
            args += [_fmt_ms(profile.jitter_ms), "distribution", "normal"]
    if profile.loss is not None:
        args += ["loss", f"{profile.loss * 100:g}%"]
    if profile.bandwidth_kbit is not None:
        args += ["rate", f"{profile.bandwidth_kbit}kbit"]
    return args


class ImpairmentEngine:
    """Applies named impairment profiles to fabric ports.

    A single netem qdisc carries delay, jitter, loss and rate, so every
    change is one ``tc qdisc replace`` and a rejected profile never leaves a
    half-configured port behind.
    """

    def __init__(self, catalogue: Optional[Mapping[str, ImpairmentProfile]] = None) -> None:
        self.catalogue: Dict[str, ImpairmentProfile] = dict(BUILTIN_PROFILES)
        if catalogue:
            self.catalogue.update(catalogue)
        self._current: Dict[str, str] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, device: str) -> threading.Lock:
        with self._guard:
            if device not in self._locks:
                self._locks[device] = threading.Lock()
            return self._locks[device]

    def resolve(self, profile: Union[str, ImpairmentProfile]) -> ImpairmentProfile:
        if isinstance(profile, ImpairmentProfile):
            return profile
        try:
            return self.catalogue[profile]
        except KeyError:
            available = ", ".join(sorted(self.catalogue))
            raise InvalidProfile(f"Unknown profile '{profile}'. Available profiles: {available}") from None

    def apply(self, port: PortHandle, profile: Union[str, ImpairmentProfile]) -> str:
        """Replace the shaping on ``port`` with ``profile``; returns the applied name."""
        resolved = self.resolve(profile)
        validate_profile(resolved)
        with self._lock_for(port.device):
            if resolved.name == DEFAULT_PROFILE or resolved.is_clear:
                self._clear(port)
                log("INFO", f"{port.link_id} ({port.device}): constraints removed")
            else:
                self._replace(port, resolved)
                log("INFO", f"{port.link_id} ({port.device}): {resolved.name} applied")
            self._current[port.device] = resolved.name
        return resolved.name

    def current_profile(self, port: PortHandle) -> str:
        return self._current.get(port.device, DEFAULT_PROFILE)

    def restore(self, port: PortHandle, name: str) -> None:
        """Record a profile name applied by an earlier controller process."""
        self._current[port.device] = name

    def forget(self, port: PortHandle) -> None:
        self._current.pop(port.device, None)

    def describe(self, port: PortHandle) -> str:
        result = run(["tc", "qdisc", "show", "dev", port.device], check=False, capture_output=True)
        if result.returncode != 0:
            return f"{port.device}: not present"
        return result.stdout.strip()

    def _replace(self, port: PortHandle, profile: ImpairmentProfile) -> None:
        cmd = ["tc", "qdisc", "replace", "dev", port.device, "root", "netem", *netem_args(profile)]
        try:
            run(cmd, capture_output=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            if "cannot find device" in stderr.lower():
                raise ManagerError(f"Port device {port.device} not found") from exc
            raise InvalidProfile(
                f"tc rejected profile '{profile.name}' on {port.device}: {stderr or exc}"
            ) from exc

    def _clear(self, port: PortHandle) -> None:
        result = run(["tc", "qdisc", "del", "dev", port.device, "root"], check=False, capture_output=True)
        if result.returncode == 0:
            return
        stderr = (result.stderr or "").strip()
        if any(marker in stderr.lower() for marker in _NO_QDISC_MARKERS):
            return
        if "cannot find device" in stderr.lower():
            raise ManagerError(f"Port device {port.device} not found")
        raise ManagerError(f"Failed to clear shaping on {port.device}: {stderr}")
