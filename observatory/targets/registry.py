"""Target registry — loads the declarative target list.

The file is YAML (JSON is accepted as-is, being a YAML subset). Either a
top-level list of targets or a mapping with a ``targets`` list:

    targets:
      - id: web
        name: Web frontend
        interval: 30
        retries: 2
        timeout: 5
        probe: {type: http, url: https://example.com/health}

The legacy form ``target: {"HTTP": {"url": ...}}`` is also understood.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from observatory.health.models import (
    FilesystemSpace,
    HttpProbe,
    PingProbe,
    ProbeSpec,
    ServiceUnit,
    TargetDescriptor,
    probe_from_dict,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60
DEFAULT_RETRIES = 0
DEFAULT_TIMEOUT = 10

# Legacy externally tagged probe names → (constructor, field)
_LEGACY_PROBES: dict[str, tuple[type, str]] = {
    "Systemd": (ServiceUnit, "unit"),
    "HTTP": (HttpProbe, "url"),
    "Ping": (PingProbe, "target"),
    "FSSpace": (FilesystemSpace, "path"),
}


class TargetConfigError(ValueError):
    """The target file exists but cannot be turned into a target list."""


class TargetRegistry:
    """Loads and caches targets from a YAML/JSON file."""

    def __init__(self, path: Path | str | None) -> None:
        self._path = Path(path) if path else None
        self._targets: list[TargetDescriptor] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[TargetDescriptor]:
        """Parse the target file. A missing file yields no targets."""
        if self._loaded and not force:
            return self._targets

        if self._path is None:
            logger.info("No target file configured")
            self._targets = []
            self._loaded = True
            return self._targets

        if not self._path.exists():
            logger.warning("Target file not found: %s", self._path)
            self._targets = []
            self._loaded = True
            return self._targets

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise TargetConfigError(f"Failed to parse {self._path}: {e}") from e

        self._targets = parse_targets(raw)
        self._loaded = True
        logger.info("Loaded %d targets from %s", len(self._targets), self._path)
        return self._targets


def parse_targets(raw: Any) -> list[TargetDescriptor]:
    """Validate the decoded file content and build descriptors."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        if "targets" not in raw:
            raise TargetConfigError(
                f"Target mapping has no 'targets' key (found: {', '.join(map(str, raw)) or 'nothing'})"
            )
        raw = raw["targets"]
        if not isinstance(raw, list):
            raise TargetConfigError("'targets' must be a list")
    if not isinstance(raw, list):
        raise TargetConfigError("Target file must hold a list or a mapping with 'targets'")

    targets: list[TargetDescriptor] = []
    seen: set[str] = set()
    for idx, entry in enumerate(raw):
        try:
            target = _parse_target(entry)
        except (TypeError, ValueError) as e:
            raise TargetConfigError(f"targets[{idx}]: {e}") from e
        if target.id in seen:
            raise TargetConfigError(f"targets[{idx}]: duplicate id {target.id!r}")
        seen.add(target.id)
        targets.append(target)
    return targets


def _parse_target(entry: Any) -> TargetDescriptor:
    if not isinstance(entry, dict):
        raise ValueError(f"must be a mapping, got {type(entry).__name__}")

    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("'name' is required")
    target_id = entry.get("id", name)
    if not isinstance(target_id, str) or not target_id.strip():
        raise ValueError("'id' must be a non-empty string")

    interval = _number(entry, "interval", DEFAULT_INTERVAL)
    timeout = _number(entry, "timeout", DEFAULT_TIMEOUT)
    retries = entry.get("retries", DEFAULT_RETRIES)
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise ValueError("'retries' must be a non-negative integer")

    return TargetDescriptor(
        id=target_id,
        name=name,
        interval=interval,
        retries=retries,
        timeout=timeout,
        probe=_parse_probe(entry),
    )


def _number(entry: dict[str, Any], key: str, default: float) -> float:
    value = entry.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' must be a positive number")
    return value


def _parse_probe(entry: dict[str, Any]) -> ProbeSpec:
    if "probe" in entry:
        return probe_from_dict(entry["probe"])

    legacy = entry.get("target")
    if isinstance(legacy, dict) and len(legacy) == 1:
        (tag, body), = legacy.items()
        if tag in _LEGACY_PROBES and isinstance(body, dict):
            cls, field_name = _LEGACY_PROBES[tag]
            value = body.get(field_name)
            if isinstance(value, str) and value.strip():
                return cls(value)
        raise ValueError(f"unsupported target variant: {legacy!r}")

    raise ValueError("'probe' is required")
