"""Check engine — runs one probe attempt for a target's probe spec.

Supports: systemd unit state, HTTP(S) GET, ICMP ping, filesystem capacity.
Every runner returns a CheckOutcome; failures of any kind become Unhealthy
outcomes. Deadlines are the caller's job: runners may take arbitrarily long
and must stay cancellable.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import socket
from typing import assert_never

import httpx
import psutil

from .models import (
    CheckOutcome,
    FilesystemSpace,
    HttpProbe,
    PingProbe,
    ProbeSpec,
    ServiceUnit,
    Status,
)

logger = logging.getLogger(__name__)

# Per-echo timeout handed to the ping binary
PING_TIMEOUT_SECONDS = 1

# Filesystem usage thresholds (percent)
DEGRADED_USAGE = 60
UNHEALTHY_USAGE = 90

_RTT_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms")


async def _run_command(*args: str) -> tuple[int, str]:
    """Run a command, return (exit code, stdout). Kills the child on cancellation."""
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return proc.returncode, stdout.decode("utf-8", errors="replace")


# ── Check runners ────────────────────────────────────────────────────────────


async def check_service_unit(unit: str) -> CheckOutcome:
    """Healthy when ``systemctl is-active`` succeeds, else report ``systemctl status``."""
    try:
        code, _ = await _run_command("systemctl", "is-active", "-q", unit)
        if code == 0:
            return CheckOutcome(Status.HEALTHY, "")
        _, output = await _run_command("systemctl", "status", unit)
    except OSError as e:
        return CheckOutcome(Status.UNHEALTHY, f"Failed to execute systemctl: {e}")
    return CheckOutcome(Status.UNHEALTHY, output)


async def check_http_url(url: str) -> CheckOutcome:
    """HTTP(S) GET; any 2xx is healthy."""
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=None) as client:
            resp = await client.get(url)
    except httpx.HTTPError as e:
        return CheckOutcome(Status.UNHEALTHY, str(e) or type(e).__name__)

    if resp.is_success:
        return CheckOutcome(Status.HEALTHY, "")
    return CheckOutcome(Status.UNHEALTHY, f"Status code: {resp.status_code}")


async def check_ping(host: str) -> CheckOutcome:
    """Resolve ``host`` and send a single echo request to its first address."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        return CheckOutcome(Status.UNHEALTHY, f"Failed to resolve host: {host}")
    if not infos:
        return CheckOutcome(Status.UNHEALTHY, f"No IP addresses found for host: {host}")

    address = infos[0][4][0]
    try:
        code, output = await _run_command(
            "ping", "-n", "-c", "1", "-W", str(PING_TIMEOUT_SECONDS), address,
        )
    except OSError as e:
        return CheckOutcome(Status.UNHEALTHY, f"Failed to execute ping: {e}")

    if code != 0:
        return CheckOutcome(Status.UNHEALTHY, "Timed out")
    match = _RTT_RE.search(output)
    if not match:
        return CheckOutcome(Status.UNHEALTHY, f"Unrecognized ping output: {output.strip()}")
    return CheckOutcome(Status.HEALTHY, f"{match.group(1)} ms")


def _usage_percent(path: str) -> int | None:
    """Rounded used-space percentage of the mount at ``path``, None if not a mount."""
    mounts = {p.mountpoint for p in psutil.disk_partitions(all=True)}
    if path not in mounts:
        return None
    usage = psutil.disk_usage(path)
    if usage.total <= 0:
        return None
    # Halves round up
    return math.floor(100 * (usage.total - usage.free) / usage.total + 0.5)


async def check_fs_space(path: str) -> CheckOutcome:
    """Grade disk usage of a mount point."""
    percentage = await asyncio.to_thread(_usage_percent, path)
    if percentage is None:
        return CheckOutcome(Status.UNHEALTHY, f"Mount point not found: {path}")

    if percentage < DEGRADED_USAGE:
        status = Status.HEALTHY
    elif percentage < UNHEALTHY_USAGE:
        status = Status.DEGRADED
    else:
        status = Status.UNHEALTHY
    return CheckOutcome(status, f"Disk space usage: {percentage}%")


# Dispatcher


def _runner_for(probe: ProbeSpec):
    if isinstance(probe, ServiceUnit):
        return check_service_unit(probe.unit)
    if isinstance(probe, HttpProbe):
        return check_http_url(probe.url)
    if isinstance(probe, PingProbe):
        return check_ping(probe.host)
    if isinstance(probe, FilesystemSpace):
        return check_fs_space(probe.path)
    assert_never(probe)


async def execute_check(probe: ProbeSpec) -> CheckOutcome:
    """Run one attempt of ``probe``. Never raises except on cancellation."""
    try:
        return await _runner_for(probe)
    except Exception as e:
        logger.exception("Probe %s leaked an exception", probe)
        return CheckOutcome(Status.UNHEALTHY, f"{type(e).__name__}: {e}")
