"""System fingerprint collection for the proposal source."""

from __future__ import annotations

import getpass
import platform

import structlog

from deepsentry.executor.base import ExecutionBackend
from deepsentry.models import SystemContext

logger = structlog.get_logger()

UNKNOWN = "unknown"

_REMOTE_PROBES = {
    "os": "uname -s",
    "arch": "uname -m",
    "username": "whoami",
    "hostname": "hostname",
}


def local_system_context() -> SystemContext:
    """Fingerprint the machine this process runs on."""
    try:
        username = getpass.getuser()
    except (KeyError, OSError):
        username = UNKNOWN
    return SystemContext(
        os=platform.system().lower() or UNKNOWN,
        arch=platform.machine() or UNKNOWN,
        username=username,
        hostname=platform.node() or UNKNOWN,
    )


async def collect_system_context(backend: ExecutionBackend) -> SystemContext:
    """Fingerprint the machine the backend executes on.

    Remote targets are probed over the backend itself; any probe that
    fails leaves its field as "unknown".
    """
    if not backend.is_remote:
        return local_system_context()

    fields: dict[str, str] = {}
    for name, command in _REMOTE_PROBES.items():
        result = await backend.run(command)
        value = result.output.strip().splitlines()[0] if result.output.strip() else ""
        if not result.success or not value:
            logger.debug("system_probe_failed", field=name, error=result.error)
            value = UNKNOWN
        fields[name] = value.lower() if name == "os" and value != UNKNOWN else value
    return SystemContext(**fields)
