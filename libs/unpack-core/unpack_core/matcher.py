"""Wildcard filters for vaults/items and hostname-scoped items."""

from __future__ import annotations

import socket
from fnmatch import fnmatchcase
from typing import Iterable, Sequence


def matches(pattern: str, candidate: str, *, case_sensitive: bool = True) -> bool:
    """Shell-glob match (`*`, `?`, `[...]`)."""
    if case_sensitive:
        return fnmatchcase(candidate, pattern)
    return fnmatchcase(candidate.lower(), pattern.lower())


def matches_any(candidate: str, patterns: Sequence[str] | None) -> bool:
    """OR over patterns. No patterns means no filter, so everything matches."""
    if not patterns:
        return True
    return any(matches(p, candidate) for p in patterns)


def select_vaults(names: Iterable[str], patterns: Sequence[str] | None) -> list[str]:
    return [n for n in names if matches_any(n, patterns)]


def select_items(titles: Iterable[str], patterns: Sequence[str] | None) -> list[str]:
    return [t for t in titles if matches_any(t, patterns)]


def split_title(title: str) -> tuple[str, str | None]:
    """
    Split an item title into (display_name, machine_filter).

    "github/laptop" -> ("github", "laptop"); titles without a separator have
    no machine filter.
    """
    if "/" not in title:
        return title, None
    name, _, machine = title.rpartition("/")
    return name, (machine or None)


def machine_applies(machine_filter: str | None, local_hostname: str) -> bool:
    if not machine_filter:
        return True
    return machine_filter.lower() == local_hostname.lower()


def local_hostname() -> str:
    """Lowercase hostname of this machine."""
    try:
        return socket.gethostname().lower()
    except OSError:
        return "unknown"
