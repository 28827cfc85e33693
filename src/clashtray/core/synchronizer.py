"""Keep the tray menu consistent with the core, the OS proxy and the cache.

Three sources of state meet here: the core's live config/topology (fetched
over the control API), the OS system-proxy setting (read live, never cached)
and the last published snapshot shown while a fresh fetch is in flight.

A view session runs ``open()`` -> ``refresh()`` -> ``close()``. Config and
topology are fetched concurrently and published together or not at all, so
the menu never pairs the mode/TUN state of one moment with the proxy list of
another. User commands are independent of the session and report failures
through :class:`CommandResult` so the shell can revert optimistic toggles.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
import enum
import logging
import os
from pathlib import Path
import threading
from typing import Callable

from clashtray.core.config_registry import ConfigRegistry, read_credentials
from clashtray.core.control_api import ControlApiClient
from clashtray.core.errors import ControlApiError, SystemProxyUnavailableError
from clashtray.core import menu
from clashtray.core.menu import MenuAction, MenuItem, MenuNode, Separator, Submenu
from clashtray.core.models import MODES, ApiCredentials, CoreConfig, ProxyGroup, Topology, normalize_mode
from clashtray.core.process_manager import CoreProcessManager
from clashtray.core.system_proxy import SystemProxyController, expected_address
from clashtray.core.topology import order_selector_groups

logger = logging.getLogger(__name__)

DISCONNECTED_LABEL = "Failed to connect to core"
API_UNAVAILABLE_LABEL = "Control API unavailable (check config)"
API_UNAVAILABLE_MESSAGE = "Control API is unavailable for the current config."

ClientFactory = Callable[[str | None, str | None], ControlApiClient]
CredentialsReader = Callable[[Path], ApiCredentials | None]


class SyncState(enum.Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class ActiveConfig:
    """The selected config file and the client derived from it, as one value."""

    path: Path | None
    credentials: ApiCredentials | None
    client: ControlApiClient


@dataclass(frozen=True, slots=True)
class DerivedFlags:
    mode: str | None = None
    system_proxy_enabled: bool = False
    system_proxy_checked: bool = False
    tun_checked: bool = False


@dataclass(frozen=True, slots=True)
class CommandResult:
    ok: bool
    message: str | None = None
    revert_checked: bool | None = None


def _same_path(a: Path | None, b: Path | None) -> bool:
    if a is None or b is None:
        return False
    return os.path.normcase(str(a)) == os.path.normcase(str(b))


class StateSynchronizer:
    def __init__(
        self,
        registry: ConfigRegistry,
        system_proxy: SystemProxyController,
        *,
        process: CoreProcessManager | None = None,
        client_factory: ClientFactory = ControlApiClient,
        credentials_reader: CredentialsReader = read_credentials,
    ) -> None:
        self._registry = registry
        self._system_proxy = system_proxy
        self._process = process
        self._client_factory = client_factory
        self._credentials_reader = credentials_reader

        self._lock = threading.RLock()
        self._state = SyncState.IDLE
        self._config: CoreConfig | None = None
        self._topology: Topology | None = None
        self._groups: list[ProxyGroup] = []
        self._flags = DerivedFlags()
        self._system_proxy_warned = False
        self._active = self._transition(registry.get_current())

    # --- active config -----------------------------------------------------

    def _transition(self, path: Path | None) -> ActiveConfig:
        """Replace the selected path and its credentials/client together."""
        credentials = self._credentials_reader(path) if path is not None else None
        if credentials is None:
            logger.warning("No API credentials for config %s; control features disabled", path)
            client = self._client_factory(None, None)
        else:
            client = self._client_factory(credentials.base_url, credentials.secret)
        active = ActiveConfig(path=path, credentials=credentials, client=client)
        with self._lock:
            self._active = active
        return active

    @property
    def active(self) -> ActiveConfig:
        with self._lock:
            return self._active

    @property
    def config_dir(self) -> Path:
        return self._registry.config_dir

    @property
    def state(self) -> SyncState:
        with self._lock:
            return self._state

    @property
    def cached_config(self) -> CoreConfig | None:
        with self._lock:
            return self._config

    @property
    def cached_topology(self) -> Topology | None:
        with self._lock:
            return self._topology

    @property
    def groups(self) -> list[ProxyGroup]:
        with self._lock:
            return list(self._groups)

    @property
    def flags(self) -> DerivedFlags:
        with self._lock:
            return self._flags

    # --- view session ------------------------------------------------------

    def open(self) -> list[MenuNode]:
        with self._lock:
            self._state = SyncState.REFRESHING
        return self.build_menu()

    def refresh(self) -> list[MenuNode]:
        active = self.active
        if not active.client.enabled:
            with self._lock:
                self._topology = None
                self._groups = []
                if self._state is SyncState.REFRESHING:
                    self._state = SyncState.DISCONNECTED
            return self.build_menu()

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="refresh") as pool:
            config_future = pool.submit(active.client.get_config)
            topology_future = pool.submit(active.client.get_topology)
            config = config_future.result()
            topology = topology_future.result()

        if config is None or topology is None:
            logger.info(
                "Refresh failed (config=%s topology=%s); showing disconnected",
                "ok" if config is not None else "failed",
                "ok" if topology is not None else "failed",
            )
            with self._lock:
                self._topology = None
                self._groups = []
                if self._state is SyncState.REFRESHING:
                    self._state = SyncState.DISCONNECTED
            return self.build_menu()

        flags = self._derive_flags(config)
        groups = order_selector_groups(topology)
        with self._lock:
            self._config = config
            self._topology = topology
            self._groups = groups
            self._flags = flags
            if self._state is SyncState.REFRESHING:
                self._state = SyncState.READY
        return self.build_menu()

    def close(self) -> list[MenuNode]:
        with self._lock:
            self._state = SyncState.IDLE
        return self.build_menu()

    def _derive_flags(self, config: CoreConfig) -> DerivedFlags:
        address = expected_address(config)
        sp_enabled = False
        sp_checked = False
        if address is not None and self._system_proxy.is_supported():
            try:
                sp_checked = self._system_proxy.is_enabled(address)
                sp_enabled = True
            except SystemProxyUnavailableError as exc:
                self._note_system_proxy_failure(exc)
        return DerivedFlags(
            mode=config.mode or None,
            system_proxy_enabled=sp_enabled,
            system_proxy_checked=sp_checked,
            tun_checked=config.tun_enabled,
        )

    def _note_system_proxy_failure(self, exc: SystemProxyUnavailableError) -> None:
        if not self._system_proxy_warned:
            logger.warning("System proxy unavailable, disabling control: %s", exc)
            self._system_proxy_warned = True
        else:
            logger.debug("System proxy still unavailable: %s", exc)

    # --- menu tree ---------------------------------------------------------

    def build_menu(self) -> list[MenuNode]:
        with self._lock:
            active = self._active
            flags = self._flags
            state = self._state
            groups = list(self._groups)

        controls = active.client.enabled
        nodes: list[MenuNode] = []

        mode_label = f"Mode ({flags.mode})" if flags.mode else "Mode"
        nodes.append(
            Submenu(
                mode_label,
                tuple(
                    MenuItem(
                        mode.capitalize(),
                        checked=flags.mode == mode,
                        enabled=controls,
                        action=MenuAction(menu.SET_MODE, (mode,)),
                    )
                    for mode in MODES
                ),
            )
        )
        nodes.append(Separator())

        if state is SyncState.DISCONNECTED:
            label = DISCONNECTED_LABEL if controls else API_UNAVAILABLE_LABEL
            nodes.append(MenuItem(label, enabled=False))
        else:
            nodes.extend(self._group_submenu(group, controls) for group in groups)
        nodes.append(Separator())

        nodes.append(
            MenuItem(
                "Set System Proxy",
                checked=flags.system_proxy_checked,
                enabled=controls and flags.system_proxy_enabled,
                action=MenuAction(menu.SET_SYSTEM_PROXY),
            )
        )
        nodes.append(
            MenuItem(
                "TUN Mode",
                checked=flags.tun_checked,
                enabled=controls,
                action=MenuAction(menu.SET_TUN),
            )
        )
        nodes.append(Separator())

        nodes.append(self._config_submenu(active, controls))
        nodes.append(
            MenuItem(
                "Open Dashboard",
                enabled=bool(active.credentials and active.credentials.dashboard_url),
                action=MenuAction(menu.OPEN_DASHBOARD),
            )
        )
        nodes.append(Separator())
        nodes.append(MenuItem("Exit", action=MenuAction(menu.EXIT)))
        return nodes

    def _group_submenu(self, group: ProxyGroup, controls: bool) -> Submenu:
        children: list[MenuNode] = [
            MenuItem(
                "Test Latency",
                enabled=controls,
                action=MenuAction(menu.PROBE_GROUP, (group.name,)),
            ),
            Separator(),
        ]
        selected = (group.selected or "").lower()
        for member in group.members or ():
            delay = group.latency_ms.get(member)
            label = f"{member}\t{delay} ms" if delay is not None else member
            children.append(
                MenuItem(
                    label,
                    checked=member.lower() == selected,
                    enabled=controls,
                    action=MenuAction(menu.SELECT_NODE, (group.name, member)),
                )
            )
        return Submenu(f"{group.name} ({group.selected or '-'})", tuple(children))

    def _config_submenu(self, active: ActiveConfig, controls: bool) -> Submenu:
        children: list[MenuNode] = [
            MenuItem(
                path.name,
                checked=_same_path(path, active.path),
                action=MenuAction(menu.SWITCH_CONFIG, (str(path),)),
            )
            for path in self._registry.list_available()
        ]
        children.append(Separator())
        children.append(
            MenuItem("Reload Config", enabled=controls, action=MenuAction(menu.RELOAD_CONFIG))
        )
        has_path = active.path is not None
        children.append(MenuItem("Edit Config", enabled=has_path, action=MenuAction(menu.EDIT_CONFIG)))
        children.append(
            MenuItem("Open Config Folder", action=MenuAction(menu.OPEN_CONFIG_FOLDER))
        )
        return Submenu("Config", tuple(children))

    # --- commands ----------------------------------------------------------

    def dispatch(self, action: MenuAction, checked: bool | None = None) -> CommandResult:
        command = action.command
        if command == menu.SET_MODE:
            return self.set_mode(action.args[0])
        if command == menu.SET_TUN:
            return self.set_tun(bool(checked))
        if command == menu.SET_SYSTEM_PROXY:
            return self.set_system_proxy(bool(checked))
        if command == menu.SELECT_NODE:
            return self.select_node(action.args[0], action.args[1])
        if command == menu.SWITCH_CONFIG:
            return self.switch_config(Path(action.args[0]))
        if command == menu.RELOAD_CONFIG:
            return self.reload_config()
        if command == menu.PROBE_GROUP:
            return self.probe_group_latency(action.args[0])
        if command == menu.PROBE_NODE:
            return self.probe_node_latency(action.args[0])
        raise ValueError(f"Unknown command: {command}")

    def set_mode(self, mode: str) -> CommandResult:
        normalized = normalize_mode(mode)
        if normalized not in MODES:
            return CommandResult(False, f"Unknown mode: {mode}")
        client = self.active.client
        if not client.enabled:
            return CommandResult(False, API_UNAVAILABLE_MESSAGE)
        try:
            client.set_mode(normalized)
        except ControlApiError as exc:
            logger.warning("Set mode %s failed: %s", normalized, exc)
            return CommandResult(False, f"Failed to set mode: {exc.user_message}")

        with self._lock:
            if self._config is not None:
                self._config = replace(self._config, mode=normalized)
            self._flags = replace(self._flags, mode=normalized)
        logger.info("Mode set to %s", normalized)
        return CommandResult(True)

    def set_tun(self, enabled: bool) -> CommandResult:
        client = self.active.client
        if not client.enabled:
            return CommandResult(False, API_UNAVAILABLE_MESSAGE, revert_checked=not enabled)
        try:
            client.set_tun(enabled)
        except ControlApiError as exc:
            logger.warning("Set TUN=%s failed: %s", enabled, exc)
            return CommandResult(
                False, f"Failed to set TUN mode: {exc.user_message}", revert_checked=not enabled
            )

        with self._lock:
            if self._config is not None:
                self._config = replace(self._config, tun_enabled=enabled)
            self._flags = replace(self._flags, tun_checked=enabled)
        logger.info("TUN mode set to %s", enabled)
        return CommandResult(True)

    def select_node(self, group: str, node: str) -> CommandResult:
        client = self.active.client
        if not client.enabled:
            return CommandResult(False, API_UNAVAILABLE_MESSAGE)
        try:
            client.select_node(group, node)
        except ControlApiError as exc:
            logger.warning("Select %s -> %s failed: %s", group, node, exc)
            return CommandResult(False, f"Failed to set proxy node: {exc.user_message}")

        with self._lock:
            if self._topology is not None and group in self._topology:
                topology = dict(self._topology)
                topology[group] = replace(topology[group], selected=node)
                self._topology = topology
                self._groups = order_selector_groups(topology)
        logger.info("Group %s now uses %s", group, node)
        return CommandResult(True)

    def set_system_proxy(self, enabled: bool) -> CommandResult:
        client = self.active.client
        if not client.enabled:
            return CommandResult(False, API_UNAVAILABLE_MESSAGE, revert_checked=not enabled)

        # Ports can change with a config reload; always ask the core.
        config = client.get_config()
        if config is None:
            return CommandResult(False, "Failed to connect to the proxy core.", revert_checked=not enabled)
        address = expected_address(config)
        if address is None:
            return CommandResult(False, "Proxy port not configured in the core.", revert_checked=False)

        try:
            currently = self._system_proxy.is_enabled(address)
            if enabled and not currently:
                self._system_proxy.enable(address)
            elif not enabled and currently:
                self._system_proxy.disable()
        except SystemProxyUnavailableError as exc:
            self._note_system_proxy_failure(exc)
            with self._lock:
                self._flags = replace(
                    self._flags, system_proxy_enabled=False, system_proxy_checked=False
                )
            return CommandResult(False, exc.user_message, revert_checked=not enabled)

        with self._lock:
            self._flags = replace(
                self._flags, system_proxy_enabled=True, system_proxy_checked=enabled
            )
        return CommandResult(True)

    def switch_config(self, path: Path) -> CommandResult:
        active = self.active
        if _same_path(path, active.path):
            return CommandResult(True)
        if not active.client.enabled:
            return CommandResult(False, API_UNAVAILABLE_MESSAGE)
        try:
            active.client.reload_config(str(path))
        except ControlApiError as exc:
            logger.warning("Switch config to %s failed: %s", path, exc)
            return CommandResult(False, f"Failed to switch configuration: {exc.user_message}")

        self._registry.set_current(path)
        new_active = self._transition(path)
        with self._lock:
            self._topology = None
            self._groups = []
        logger.info("Switched config to %s", path)
        if new_active.credentials is None:
            return CommandResult(
                True, f"Switched to {path.name}, but its control API settings could not be read."
            )
        return CommandResult(True)

    def reload_config(self) -> CommandResult:
        active = self.active
        if not active.client.enabled or active.path is None:
            return CommandResult(False, API_UNAVAILABLE_MESSAGE)
        try:
            active.client.reload_config(str(active.path))
        except ControlApiError as exc:
            logger.warning("Reload of %s failed: %s", active.path, exc)
            return CommandResult(False, f"Failed to reload configuration: {exc.user_message}")
        return CommandResult(True, "Configuration reloaded")

    def probe_group_latency(self, group: str) -> CommandResult:
        self.active.client.probe_group_latency(group)
        return CommandResult(True)

    def probe_node_latency(self, node: str) -> CommandResult:
        self.active.client.probe_node_latency(node)
        return CommandResult(True)

    # --- lifecycle ---------------------------------------------------------

    def shutdown(self) -> None:
        config = self.cached_config
        address = expected_address(config) if config is not None else None
        if address is not None and self._system_proxy.is_supported():
            try:
                if self._system_proxy.is_enabled(address):
                    self._system_proxy.disable()
            except SystemProxyUnavailableError as exc:
                logger.warning("Could not disable system proxy on exit: %s", exc)
        if self._process is not None:
            self._process.stop()
