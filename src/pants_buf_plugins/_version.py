"""Semantic versions with a leading ``v`` (no Pants dependencies).

Versions follow the Go module convention: ``v1.2.3``, ``v1.2.3-rc.1`` and the
shorthand forms ``v1.2`` / ``v1`` are all valid. Shorthand versions compare
as if the missing components were zero. Build metadata is accepted but
ignored for ordering and dropped by :func:`canonical`.
"""

from __future__ import annotations

import functools
from typing import Iterable, Optional

import semver


def parse(version: str) -> Optional[semver.Version]:
    """Parse a ``v``-prefixed version, returning None when it is invalid."""
    if not version or not version.startswith("v"):
        return None
    body = version[1:]
    core = body.split("-", 1)[0].split("+", 1)[0]
    # Shorthand versions may not carry a prerelease or build suffix.
    if core.count(".") < 2 and core != body:
        return None
    try:
        parsed = semver.Version.parse(body, optional_minor_and_patch=True)
    except (ValueError, TypeError):
        return None
    return parsed.replace(build=None)


def is_valid(version: str) -> bool:
    return parse(version) is not None


def canonical(version: str) -> str:
    """Return ``vMAJOR.MINOR.PATCH[-PRE]``, or "" for an invalid version."""
    parsed = parse(version)
    if parsed is None:
        return ""
    return f"v{parsed}"


def prerelease(version: str) -> str:
    parsed = parse(version)
    if parsed is None or parsed.prerelease is None:
        return ""
    return f"-{parsed.prerelease}"


def compare(a: str, b: str) -> int:
    """Compare two versions; invalid versions sort before all valid ones."""
    pa, pb = parse(a), parse(b)
    if pa is None or pb is None:
        if pa is None and pb is None:
            return (a > b) - (a < b)
        return -1 if pa is None else 1
    return pa.compare(pb)


sort_key = functools.cmp_to_key(compare)


def max_version(versions: Iterable[str]) -> str:
    """Return the highest version, or "" when there are none."""
    best = ""
    for version in versions:
        if not best or compare(best, version) < 0:
            best = version
    return best


def strip_v(version: str) -> str:
    return version[1:] if version.startswith("v") else version
