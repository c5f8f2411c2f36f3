# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Targets - Named data units and their backup object keys.

A target is a logical piece of stack state backed by exactly one Docker
volume. Backups of a target are stored under a key whose shape is fixed:

    {prefix}/{short_name}_{YYYYMMDD_HHMMSS}.tar.gz

Existing buckets hold objects in this shape, so it must never change.
"""

import re
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Iterable, List, Tuple

from stackops.errors import explain_invalid_target_spec, explain_invalid_timestamp
from stackops.exceptions import ConfigurationError

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"
DEFAULT_PREFIX = "backups"

_TIMESTAMP_RE = re.compile(r"^\d{8}_\d{6}$")
_SHORT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")
_KEY_RE = re.compile(r"^(?P<short>.+)_(?P<ts>\d{8}_\d{6})\.tar\.gz$")


@dataclass(frozen=True)
class Target:
    """A named data unit backed by one compose volume."""

    short_name: str

    # Compose services that write to the volume
    services: Tuple[str, ...] = ()

    def volume_id(self, project_name: str) -> str:
        """Docker volume name as created by compose for this project."""
        return f"{project_name}_{self.short_name}"


DEFAULT_TARGETS: Tuple[Target, ...] = (
    Target("openwebui-data", ("openwebui",)),
    Target("caddy-data", ("caddy",)),
    Target("caddy-config", ("caddy",)),
)

_KNOWN_OWNERS = {t.short_name: t.services for t in DEFAULT_TARGETS}


def parse_target_spec(spec: str) -> Target:
    """
    Parse one target override entry.

    Accepted forms are ``short-name`` (owners looked up among the default
    targets, none otherwise) and ``short-name:svc[+svc...]``.
    """
    raw = spec.strip()
    short, sep, owners = raw.partition(":")
    short = short.strip()
    if not short or not _SHORT_NAME_RE.match(short):
        raise ConfigurationError(explain_invalid_target_spec(spec))

    if sep:
        services = tuple(s.strip() for s in owners.split("+") if s.strip())
        if not services:
            raise ConfigurationError(explain_invalid_target_spec(spec))
    else:
        services = _KNOWN_OWNERS.get(short, ())

    return Target(short, services)


def parse_targets(value: str | Iterable[str] | None) -> Tuple[Target, ...]:
    """
    Parse a comma separated string (or iterable of entries) into targets.

    Empty input yields the default targets. Duplicate short names keep the
    first occurrence.
    """
    if value is None:
        return DEFAULT_TARGETS

    entries: List[str]
    if isinstance(value, str):
        entries = [p for p in value.split(",") if p.strip()]
    else:
        entries = [p for p in value if p and p.strip()]

    if not entries:
        return DEFAULT_TARGETS

    targets: List[Target] = []
    seen: set[str] = set()
    for entry in entries:
        target = parse_target_spec(entry)
        if target.short_name in seen:
            continue
        seen.add(target.short_name)
        targets.append(target)
    return tuple(targets)


def owning_services(targets: Iterable[Target]) -> List[str]:
    """Owning services of all targets, each listed once, in first-seen order."""
    services: List[str] = []
    for target in targets:
        for service in target.services:
            if service not in services:
                services.append(service)
    return services


def new_timestamp(now: datetime | None = None) -> str:
    """Run-wide backup timestamp, captured once per run."""
    return (now or datetime.now(UTC)).strftime(TIMESTAMP_FORMAT)


def validate_timestamp(value: str) -> str:
    """Return the timestamp unchanged, or raise ConfigurationError."""
    if not _TIMESTAMP_RE.match(value or ""):
        raise ConfigurationError(explain_invalid_timestamp(value))
    try:
        datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_timestamp(value)) from exc
    return value


def backup_key(prefix: str, short_name: str, timestamp: str) -> str:
    """Object key for one target's archive at one timestamp."""
    prefix = prefix.strip("/")
    name = f"{short_name}_{timestamp}{ARCHIVE_SUFFIX}"
    return f"{prefix}/{name}" if prefix else name


def parse_backup_key(key: str) -> Tuple[str, str] | None:
    """
    Split a backup key into (short_name, timestamp).

    Returns None for keys that are not backup archives.
    """
    name = key.rsplit("/", 1)[-1]
    match = _KEY_RE.match(name)
    if not match:
        return None
    return match.group("short"), match.group("ts")
