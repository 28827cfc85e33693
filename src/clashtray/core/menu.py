"""Declarative menu tree handed to the tray shell for rendering."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

SET_MODE = "set_mode"
SET_TUN = "set_tun"
SET_SYSTEM_PROXY = "set_system_proxy"
SELECT_NODE = "select_node"
SWITCH_CONFIG = "switch_config"
RELOAD_CONFIG = "reload_config"
PROBE_GROUP = "probe_group_latency"
PROBE_NODE = "probe_node_latency"

# Handled by the shell itself (desktop integration, not core state).
EDIT_CONFIG = "edit_config"
OPEN_CONFIG_FOLDER = "open_config_folder"
OPEN_DASHBOARD = "open_dashboard"
EXIT = "exit"

SHELL_COMMANDS = frozenset({EDIT_CONFIG, OPEN_CONFIG_FOLDER, OPEN_DASHBOARD, EXIT})


@dataclass(frozen=True, slots=True)
class MenuAction:
    command: str
    args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MenuItem:
    label: str
    checked: bool | None = None
    enabled: bool = True
    action: MenuAction | None = None

    @property
    def checkable(self) -> bool:
        return self.checked is not None


@dataclass(frozen=True, slots=True)
class Submenu:
    label: str
    children: tuple["MenuNode", ...] = ()
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class Separator:
    pass


MenuNode = Union[MenuItem, Submenu, Separator]


def find_item(nodes: tuple[MenuNode, ...] | list[MenuNode], label: str) -> MenuItem | Submenu | None:
    """Depth-first lookup by label."""
    for node in nodes:
        if isinstance(node, Separator):
            continue
        if node.label == label:
            return node
        if isinstance(node, Submenu):
            found = find_item(node.children, label)
            if found is not None:
                return found
    return None
