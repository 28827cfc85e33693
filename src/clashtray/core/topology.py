"""Derive the switchable, display-ordered view of proxy groups.

The core reports its topology as a flat ``{name: entry}`` map. A synthetic
``GLOBAL`` entry, when present, lists every other group in the order the
config declares them; that order is authoritative for display.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Mapping

from clashtray.core.models import GLOBAL_GROUP, ProxyGroup


def order_selector_groups(topology: Mapping[str, ProxyGroup]) -> list[ProxyGroup]:
    """Return selector groups in display order, annotated with member latency."""
    global_group = topology.get(GLOBAL_GROUP)
    if global_group is not None and global_group.members is not None:
        ordered: Iterable[ProxyGroup] = (
            topology[name] for name in global_group.members if name in topology
        )
    else:
        ordered = topology.values()

    return [
        replace(group, latency_ms=latency_for(topology, group.members or ()))
        for group in ordered
        if group.is_selector
    ]


def latency_for(topology: Mapping[str, ProxyGroup], members: Iterable[str]) -> dict[str, int]:
    latency: dict[str, int] = {}
    for name in members:
        entry = topology.get(name)
        if entry is not None and entry.last_delay_ms is not None:
            latency[name] = entry.last_delay_ms
    return latency
