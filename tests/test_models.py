from __future__ import annotations

import pytest

from clashtray.core.models import CoreConfig, ProxyGroup, parse_topology


def test_core_config_normalizes_mode_and_ports() -> None:
    config = CoreConfig.from_dict(
        {"mode": "Global", "mixed-port": "7890", "socks-port": 0, "port": True, "tun": {"enable": True}}
    )

    assert config.mode == "global"
    assert config.mixed_port == 7890
    assert config.socks_port == 0
    assert config.port is None
    assert config.tun_enabled is True


def test_core_config_treats_malformed_tun_as_disabled() -> None:
    assert CoreConfig.from_dict({"mode": "rule", "tun": {"enable": "yes"}}).tun_enabled is False
    assert CoreConfig.from_dict({"mode": "rule", "tun": True}).tun_enabled is False
    assert CoreConfig.from_dict({}).tun_enabled is False


def test_proxy_group_reads_members_and_last_delay() -> None:
    group = ProxyGroup.from_dict(
        "Proxy", {"type": "Selector", "now": "hk", "all": ["hk", "jp"], "history": [{"delay": 40}, {"delay": 75}]}
    )

    assert group.is_selector
    assert group.members == ("hk", "jp")
    assert group.selected == "hk"
    assert group.last_delay_ms == 75


def test_timeout_delay_is_not_recorded() -> None:
    node = ProxyGroup.from_dict("hk", {"type": "Trojan", "history": [{"delay": 0}]})

    assert node.members is None
    assert node.last_delay_ms is None


def test_parse_topology_rejects_unexpected_payloads() -> None:
    assert parse_topology(None) is None
    assert parse_topology({"proxies": []}) is None
    topology = parse_topology({"proxies": {"DIRECT": {"type": "Direct"}, "bad": "x"}})
    assert topology is not None
    assert list(topology) == ["DIRECT"]


def test_proxy_group_is_hashable_with_read_only_latency() -> None:
    latency = {"hk": 88}
    group = ProxyGroup("Proxy", "Selector", "hk", ("hk", "jp"), latency_ms=latency)
    latency["jp"] = 120

    assert hash(group) == hash(ProxyGroup("Proxy", "Selector", "hk", ("hk", "jp"), latency_ms={"hk": 88}))
    assert dict(group.latency_ms) == {"hk": 88}
    with pytest.raises(TypeError):
        group.latency_ms["jp"] = 120  # type: ignore[index]
