from __future__ import annotations

from clashtray.core.models import parse_topology
from clashtray.core.topology import order_selector_groups


def _topology(proxies: dict) -> dict:
    parsed = parse_topology({"proxies": proxies})
    assert parsed is not None
    return parsed


def test_global_members_define_order_and_non_selectors_are_dropped() -> None:
    topology = _topology(
        {
            "GLOBAL": {"type": "Selector", "now": "A", "all": ["A", "B"]},
            "A": {"type": "Selector", "now": "x", "all": ["x", "y"]},
            "B": {"type": "URLTest", "now": "x", "all": ["x", "y"]},
        }
    )

    groups = order_selector_groups(topology)

    assert [g.name for g in groups] == ["A"]
    assert groups[0].selected == "x"
    assert groups[0].members == ("x", "y")


def test_without_global_insertion_order_is_kept() -> None:
    topology = _topology(
        {
            "Zeta": {"type": "Selector", "now": "n1", "all": ["n1"]},
            "auto": {"type": "URLTest", "now": "n1", "all": ["n1"]},
            "Alpha": {"type": "selector", "now": "n2", "all": ["n1", "n2"]},
            "n1": {"type": "Shadowsocks"},
            "n2": {"type": "Vmess"},
        }
    )

    assert [g.name for g in order_selector_groups(topology)] == ["Zeta", "Alpha"]


def test_global_references_to_missing_groups_are_skipped() -> None:
    topology = _topology(
        {
            "GLOBAL": {"type": "Selector", "all": ["Gone", "Proxy", "AlsoGone", "Media"]},
            "Media": {"type": "Selector", "now": "DIRECT", "all": ["DIRECT"]},
            "Proxy": {"type": "Selector", "now": "DIRECT", "all": ["DIRECT"]},
        }
    )

    assert [g.name for g in order_selector_groups(topology)] == ["Proxy", "Media"]


def test_global_without_member_list_falls_back_to_insertion_order() -> None:
    topology = _topology(
        {
            "Second": {"type": "Selector", "all": []},
            "GLOBAL": {"type": "Selector"},
            "First": {"type": "Selector", "all": []},
        }
    )

    assert [g.name for g in order_selector_groups(topology)] == ["Second", "GLOBAL", "First"]


def test_order_is_deterministic() -> None:
    topology = _topology(
        {
            "GLOBAL": {"type": "Selector", "all": ["b", "a", "c"]},
            "a": {"type": "Selector", "all": []},
            "b": {"type": "Selector", "all": []},
            "c": {"type": "Fallback", "all": []},
        }
    )

    first = [g.name for g in order_selector_groups(topology)]
    for _ in range(5):
        assert [g.name for g in order_selector_groups(topology)] == first
    assert first == ["b", "a"]


def test_member_latency_comes_from_member_history() -> None:
    topology = _topology(
        {
            "Proxy": {"type": "Selector", "now": "hk", "all": ["hk", "jp", "us"]},
            "hk": {"type": "Trojan", "history": [{"delay": 300}, {"delay": 120}]},
            "jp": {"type": "Trojan", "history": [{"delay": 0}]},
            "us": {"type": "Trojan", "history": []},
        }
    )

    (group,) = order_selector_groups(topology)

    assert dict(group.latency_ms) == {"hk": 120}
