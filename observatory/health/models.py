"""Data models for monitored targets and their observations.

A target carries exactly one probe spec. The set of probe kinds is closed:
``ServiceUnit``, ``HttpProbe``, ``PingProbe`` and ``FilesystemSpace``.
The encoding helpers at the bottom of this module are the only place the
persisted form of a probe spec is produced or parsed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, assert_never


class Status(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"


# ── Probe specs ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServiceUnit:
    """A systemd unit that must be active."""

    kind: ClassVar[str] = "service_unit"
    unit: str


@dataclass(frozen=True)
class HttpProbe:
    """A URL that must answer GET with a 2xx status."""

    kind: ClassVar[str] = "http"
    url: str


@dataclass(frozen=True)
class PingProbe:
    """A host that must answer an ICMP echo request."""

    kind: ClassVar[str] = "ping"
    host: str


@dataclass(frozen=True)
class FilesystemSpace:
    """A mount point whose usage is graded healthy / degraded / unhealthy."""

    kind: ClassVar[str] = "filesystem"
    path: str


ProbeSpec = ServiceUnit | HttpProbe | PingProbe | FilesystemSpace


# ── Targets and outcomes ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class TargetDescriptor:
    """A monitored target as declared in configuration.

    ``id`` is the stable identity; every other field may change when the
    same id is declared again.
    """

    id: str
    name: str
    interval: float  # seconds between cycle starts
    retries: int  # max retries after the first failed attempt in a cycle
    timeout: float  # seconds, per attempt
    probe: ProbeSpec

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "interval": self.interval,
            "retries": self.retries,
            "timeout": self.timeout,
            "probe": probe_to_dict(self.probe),
        }


@dataclass(frozen=True)
class CheckOutcome:
    """Result of one probe attempt. Never persisted on its own."""

    status: Status
    description: str = ""


@dataclass(frozen=True)
class ObservedStatus:
    timestamp: datetime  # UTC, cycle completion time
    status: Status
    description: str
    retries: int  # retries actually consumed in the cycle

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(timespec="microseconds"),
            "status": self.status.value,
            "description": self.description,
            "retries": self.retries,
        }


@dataclass(frozen=True)
class Observation:
    """The durable record of one finalized cycle."""

    target: TargetDescriptor
    observed_status: ObservedStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "observed_status": self.observed_status.to_dict(),
        }


# ── Probe spec encoding ──────────────────────────────────────────────────────


def probe_to_dict(probe: ProbeSpec) -> dict[str, str]:
    """Self-describing mapping form: ``{"type": <kind>, <field>: <value>}``."""
    if isinstance(probe, ServiceUnit):
        return {"type": probe.kind, "unit": probe.unit}
    if isinstance(probe, HttpProbe):
        return {"type": probe.kind, "url": probe.url}
    if isinstance(probe, PingProbe):
        return {"type": probe.kind, "host": probe.host}
    if isinstance(probe, FilesystemSpace):
        return {"type": probe.kind, "path": probe.path}
    assert_never(probe)


def probe_from_dict(data: dict[str, Any]) -> ProbeSpec:
    """Inverse of :func:`probe_to_dict`. Raises ``ValueError`` on bad input."""
    if not isinstance(data, dict):
        raise ValueError(f"probe must be a mapping, got {type(data).__name__}")
    kind = data.get("type")
    field_name = {
        ServiceUnit.kind: "unit",
        HttpProbe.kind: "url",
        PingProbe.kind: "host",
        FilesystemSpace.kind: "path",
    }.get(kind)
    if field_name is None:
        raise ValueError(f"Unknown probe type: {kind!r}")

    value = data.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"probe of type {kind!r} requires a non-empty '{field_name}'")

    if kind == ServiceUnit.kind:
        return ServiceUnit(unit=value)
    if kind == HttpProbe.kind:
        return HttpProbe(url=value)
    if kind == PingProbe.kind:
        return PingProbe(host=value)
    return FilesystemSpace(path=value)


def encode_probe(probe: ProbeSpec) -> str:
    return json.dumps(probe_to_dict(probe), sort_keys=True)


def decode_probe(text: str) -> ProbeSpec:
    return probe_from_dict(json.loads(text))
