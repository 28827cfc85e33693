"""Value types for the proxy core's control API payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal, Mapping

Mode = Literal["rule", "direct", "global"]
MODES: tuple[Mode, ...] = ("rule", "direct", "global")

GLOBAL_GROUP = "GLOBAL"
SELECTOR_KIND = "selector"


def normalize_mode(value: Any) -> str:
    return str(value or "").strip().lower()


def _optional_port(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        port = int(value)
    except (TypeError, ValueError):
        return None
    return port if port >= 0 else None


@dataclass(frozen=True, slots=True)
class CoreConfig:
    mode: str
    mixed_port: int | None = None
    socks_port: int | None = None
    port: int | None = None
    tun_enabled: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CoreConfig":
        tun = data.get("tun")
        tun_enabled = False
        if isinstance(tun, Mapping):
            raw_enable = tun.get("enable")
            tun_enabled = raw_enable if isinstance(raw_enable, bool) else False
        return cls(
            mode=normalize_mode(data.get("mode")),
            mixed_port=_optional_port(data.get("mixed-port")),
            socks_port=_optional_port(data.get("socks-port")),
            port=_optional_port(data.get("port")),
            tun_enabled=tun_enabled,
        )


@dataclass(frozen=True, slots=True)
class ProxyGroup:
    """A topology entry; groups carry members, plain nodes do not."""

    name: str
    kind: str
    selected: str | None = None
    members: tuple[str, ...] | None = None
    last_delay_ms: int | None = None
    latency_ms: Mapping[str, int] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "latency_ms", MappingProxyType(dict(self.latency_ms)))

    @property
    def is_selector(self) -> bool:
        return self.kind.strip().lower() == SELECTOR_KIND

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "ProxyGroup":
        raw_members = data.get("all")
        members: tuple[str, ...] | None = None
        if isinstance(raw_members, list):
            members = tuple(str(item) for item in raw_members if item is not None)

        selected = data.get("now")
        return cls(
            name=str(data.get("name") or name),
            kind=str(data.get("type") or ""),
            selected=str(selected) if selected not in (None, "") else None,
            members=members,
            last_delay_ms=_last_delay(data.get("history")),
        )


def _last_delay(history: Any) -> int | None:
    if not isinstance(history, list) or not history:
        return None
    last = history[-1]
    if not isinstance(last, Mapping):
        return None
    delay = last.get("delay")
    if isinstance(delay, bool) or not isinstance(delay, int) or delay <= 0:
        return None
    return delay


Topology = dict[str, ProxyGroup]


def parse_topology(payload: Any) -> Topology | None:
    if not isinstance(payload, Mapping):
        return None
    proxies = payload.get("proxies")
    if not isinstance(proxies, Mapping):
        return None
    topology: Topology = {}
    for name, entry in proxies.items():
        if not isinstance(entry, Mapping):
            continue
        topology[str(name)] = ProxyGroup.from_dict(str(name), entry)
    return topology


@dataclass(frozen=True, slots=True)
class ApiCredentials:
    base_url: str
    secret: str | None = None
    dashboard_url: str | None = None
