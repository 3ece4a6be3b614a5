"""Dependency ordering for plugins and plugin releases (no Pants dependencies).

The resolver works in rounds: each round moves every item whose
dependencies are already resolved into the output, preserving input order.
A round that resolves nothing leaves a cycle (or a pin on a version that is
not present) and the remaining items are reported verbatim.

A dependency whose plugin name does not appear in the input at all is
external to the set and is ignored for ordering.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable, List, Sequence, TypeVar

from pants_buf_plugins._exceptions import DependencyCycle

if TYPE_CHECKING:
    from pants_buf_plugins._plugin import Plugin
    from pants_buf_plugins._releases import PluginRelease

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _sort_in_rounds(
    items: Sequence[T],
    key_of: Callable[[T], str],
    deps_of: Callable[[T], Iterable[str]],
    label_of: Callable[[T], str],
) -> List[T]:
    known_names = {key_of(item).rpartition(":")[0] for item in items}
    remaining = list(items)
    resolved: List[T] = []
    resolved_keys: set[str] = set()
    while remaining:
        unresolved: List[T] = []
        for item in remaining:
            ready = True
            for dep in deps_of(item):
                dep_name = dep.rpartition(":")[0]
                if dep_name not in known_names:
                    logger.debug("%s: ignoring external dependency %s", label_of(item), dep)
                    continue
                if dep not in resolved_keys:
                    ready = False
                    break
            if ready:
                resolved.append(item)
                resolved_keys.add(key_of(item))
            else:
                unresolved.append(item)
        if len(unresolved) == len(remaining):
            raise DependencyCycle([label_of(item) for item in unresolved])
        remaining = unresolved
    return resolved


def sort_by_dependency_order(plugins: Sequence["Plugin"]) -> List["Plugin"]:
    """Order plugins so that every dependency precedes its dependents.

    Raises:
        DependencyCycle: If some plugins can never be resolved.
    """
    return _sort_in_rounds(
        plugins,
        key_of=lambda p: p.name_version,
        deps_of=lambda p: [dep.qualified(p.remote) for dep in p.deps],
        label_of=lambda p: p.name_version,
    )


def strip_remote(pin: str) -> str:
    """Drop the remote from a three-part ``remote/owner/name:version`` pin."""
    name, _, version = pin.partition(":")
    parts = name.split("/")
    if len(parts) == 3:
        name = "/".join(parts[1:])
    return f"{name}:{version}"


def sort_releases_by_dependency_order(
    releases: Sequence["PluginRelease"],
) -> List["PluginRelease"]:
    """Order releases so that every dependency precedes its dependents.

    Release names carry no remote while their dependency pins do.
    """
    return _sort_in_rounds(
        releases,
        key_of=lambda r: f"{r.name}:{r.version}",
        deps_of=lambda r: [strip_remote(dep) for dep in r.dependencies],
        label_of=lambda r: f"{r.name}:{r.version}",
    )
