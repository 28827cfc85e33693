"""Read and write the desktop-wide system proxy setting.

The OS setting is treated as a live oracle: nothing here caches whether the
proxy is enabled, every query reads the current value.

Backends:
- Windows: ``Internet Settings`` registry key + WinINet change notification
- GNOME: GSettings via Gio (python3-gi), falling back to the ``gsettings`` CLI
"""

from __future__ import annotations

from dataclasses import dataclass
import ast
import logging
import shlex
import shutil
import subprocess
import sys
from typing import Any, Callable, Final, Literal, Protocol, cast

from clashtray.core.errors import SystemProxyUnavailableError
from clashtray.core.models import CoreConfig

try:  # pragma: no cover - optional dependency in some environments
    import gi

    gi.require_version("Gio", "2.0")
    from gi.repository import Gio
except Exception:  # pragma: no cover - optional dependency in some environments
    Gio = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

LOOPBACK_HOST: Final[str] = "127.0.0.1"
SOCKS_PREFIX: Final[str] = "socks="


@dataclass(frozen=True, slots=True)
class SystemProxyState:
    enabled: bool
    server: str


class ProxyBackend(Protocol):
    name: str

    def read(self) -> SystemProxyState: ...

    def enable(self, server: str) -> None: ...

    def disable(self) -> None: ...

    def notify(self) -> None: ...


# --- Windows registry ------------------------------------------------------

INTERNET_SETTINGS_PATH: Final[str] = r"Software\Microsoft\Windows\CurrentVersion\Internet Settings"
INTERNET_OPTION_SETTINGS_CHANGED: Final[int] = 39
INTERNET_OPTION_REFRESH: Final[int] = 37
WINDOWS_BYPASS: Final[str] = "localhost;127.*;<local>"

SetOptionFn = Callable[[Any, int, Any, int], Any]


def _wininet_set_option() -> SetOptionFn:
    import ctypes

    return ctypes.windll.wininet.InternetSetOptionW  # type: ignore[attr-defined]


class WindowsRegistryBackend:
    name = "registry"

    def __init__(self, registry: Any = None, set_option: SetOptionFn | None = None) -> None:
        if registry is None:
            import winreg as registry  # type: ignore[no-redef]
        self._winreg = registry
        self._set_option = set_option

    def _open(self, *, write: bool):
        access = self._winreg.KEY_READ | (self._winreg.KEY_WRITE if write else 0)
        try:
            return self._winreg.OpenKey(self._winreg.HKEY_CURRENT_USER, INTERNET_SETTINGS_PATH, 0, access)
        except OSError as exc:
            logger.exception("Failed to open Internet Settings key (write=%s)", write)
            raise SystemProxyUnavailableError(
                f"Cannot open registry key {INTERNET_SETTINGS_PATH}: {exc}",
                user_message="System proxy settings are not accessible.",
            ) from exc

    def _query(self, key: Any, name: str, default: Any) -> Any:
        try:
            value, _kind = self._winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            return default
        except OSError as exc:
            raise SystemProxyUnavailableError(
                f"Cannot read registry value {name}: {exc}",
                user_message="System proxy settings are not accessible.",
            ) from exc
        return value

    def _set(self, key: Any, name: str, kind: int, value: Any) -> None:
        try:
            self._winreg.SetValueEx(key, name, 0, kind, value)
        except OSError as exc:
            logger.exception("Failed to write registry value %s", name)
            raise SystemProxyUnavailableError(
                f"Cannot write registry value {name}: {exc}",
                user_message="Failed to change system proxy settings.",
            ) from exc

    def read(self) -> SystemProxyState:
        with self._open(write=False) as key:
            raw_enabled = self._query(key, "ProxyEnable", 0)
            raw_server = self._query(key, "ProxyServer", "")
        try:
            enabled = int(raw_enabled) == 1
        except (TypeError, ValueError):
            enabled = False
        server = raw_server if isinstance(raw_server, str) else ""
        return SystemProxyState(enabled=enabled, server=server)

    def enable(self, server: str) -> None:
        with self._open(write=True) as key:
            self._set(key, "ProxyServer", self._winreg.REG_SZ, server)
            self._set(key, "ProxyOverride", self._winreg.REG_SZ, WINDOWS_BYPASS)
            # Flip the flag only once the server it points at is in place.
            self._set(key, "ProxyEnable", self._winreg.REG_DWORD, 1)

    def disable(self) -> None:
        with self._open(write=True) as key:
            self._set(key, "ProxyEnable", self._winreg.REG_DWORD, 0)

    def notify(self) -> None:
        set_option = self._set_option or _wininet_set_option()
        set_option(None, INTERNET_OPTION_SETTINGS_CHANGED, None, 0)
        set_option(None, INTERNET_OPTION_REFRESH, None, 0)


# --- GNOME settings --------------------------------------------------------

GnomeBackendName = Literal["gio", "gsettings"]
ValueKind = Literal["string", "bool", "int", "strv"]

_SCHEMA_PROXY: Final[str] = "org.gnome.system.proxy"
_SCHEMA_HTTP: Final[str] = "org.gnome.system.proxy.http"
_SCHEMA_HTTPS: Final[str] = "org.gnome.system.proxy.https"
_SCHEMA_SOCKS: Final[str] = "org.gnome.system.proxy.socks"

_DEFAULT_IGNORE_HOSTS: Final[list[str]] = ["localhost", "127.0.0.0/8", "::1"]


@dataclass(frozen=True, slots=True)
class _SettingSpec:
    schema: str
    key: str
    kind: ValueKind


_MODE_SPEC = _SettingSpec(_SCHEMA_PROXY, "mode", "string")
_IGNORE_HOSTS_SPEC = _SettingSpec(_SCHEMA_PROXY, "ignore-hosts", "strv")
_USE_SAME_PROXY_SPEC = _SettingSpec(_SCHEMA_PROXY, "use-same-proxy", "bool")
_HTTP_ENABLED_SPEC = _SettingSpec(_SCHEMA_HTTP, "enabled", "bool")
_HTTP_HOST_SPEC = _SettingSpec(_SCHEMA_HTTP, "host", "string")
_HTTP_PORT_SPEC = _SettingSpec(_SCHEMA_HTTP, "port", "int")
_HTTPS_HOST_SPEC = _SettingSpec(_SCHEMA_HTTPS, "host", "string")
_HTTPS_PORT_SPEC = _SettingSpec(_SCHEMA_HTTPS, "port", "int")
_SOCKS_HOST_SPEC = _SettingSpec(_SCHEMA_SOCKS, "host", "string")
_SOCKS_PORT_SPEC = _SettingSpec(_SCHEMA_SOCKS, "port", "int")


def _parse_gsettings_str(raw: str) -> str:
    raw = (raw or "").strip()
    if not raw:
        return ""
    try:
        parsed = ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        parsed = None
    if isinstance(parsed, str):
        return parsed.strip()
    if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
        return raw[1:-1].strip()
    return raw


def _parse_gsettings_bool(raw: str) -> bool:
    return (raw or "").strip().lower() == "true"


def _parse_gsettings_int(raw: str, *, default: int = 0) -> int:
    try:
        return int((raw or "").strip())
    except ValueError:
        return default


def _parse_gsettings_str_list(raw: str) -> list[str]:
    raw = (raw or "").strip()
    if raw.startswith("@as "):
        raw = raw[4:]
    try:
        parsed = ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        return []
    if not isinstance(parsed, list):
        return []
    return [item.strip() for item in parsed if isinstance(item, str) and item.strip()]


def _format_gsettings_str(value: str) -> str:
    value = (value or "").replace("'", "\\'")
    return f"'{value}'"


def _format_gsettings_str_list(values: list[str]) -> str:
    quoted = ", ".join(_format_gsettings_str(v) for v in values)
    return f"[{quoted}]"


def _decode_value(raw: str, kind: ValueKind) -> Any:
    if kind == "string":
        return _parse_gsettings_str(raw)
    if kind == "bool":
        return _parse_gsettings_bool(raw)
    if kind == "int":
        return _parse_gsettings_int(raw)
    return _parse_gsettings_str_list(raw)


def _encode_for_gsettings(kind: ValueKind, value: Any) -> str:
    if kind == "string":
        return _format_gsettings_str(str(value or ""))
    if kind == "bool":
        return "true" if value else "false"
    if kind == "int":
        return str(int(value))
    return _format_gsettings_str_list(list(value))


def _merge_ignore_hosts(*sources: list[str]) -> list[str]:
    merged: list[str] = []
    for source in sources:
        for item in source:
            host = (item or "").strip()
            if host and host not in merged:
                merged.append(host)
    return merged


def _run(cmd: list[str], *, timeout_s: float = 3.0) -> subprocess.CompletedProcess[str]:
    command_text = shlex.join(cmd)
    logger.debug("Running command: %s", command_text)
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as exc:
        logger.exception("Command timed out: %s", command_text)
        raise SystemProxyUnavailableError(
            f"Command timed out: {command_text}",
            user_message="Timed out while accessing system proxy settings.",
        ) from exc
    except OSError as exc:
        logger.exception("Command execution failed: %s", command_text)
        raise SystemProxyUnavailableError(
            f"Command failed: {command_text}: {exc}",
            user_message="System proxy settings are not accessible (missing tools/permissions).",
        ) from exc

    if result.returncode != 0:
        detail = (result.stderr or "").strip() or (result.stdout or "").strip() or "unknown error"
        logger.error("Command failed rc=%s cmd=%s detail=%r", result.returncode, command_text, detail)
        raise SystemProxyUnavailableError(
            f"Command failed: {command_text}: {detail}",
            user_message=f"Failed to access system proxy settings: {detail}",
        )
    return result


def _gsettings_available() -> bool:
    if shutil.which("gsettings") is None:
        return False
    try:
        out = _run(["gsettings", "list-keys", _SCHEMA_PROXY], timeout_s=2.0).stdout
    except SystemProxyUnavailableError:
        return False
    return "mode" in out


def _gio_available() -> bool:
    if Gio is None:
        return False
    try:
        source = Gio.SettingsSchemaSource.get_default()
    except Exception:
        logger.exception("Failed to read Gio schema source")
        return False
    if source is None:
        return False
    for schema in (_SCHEMA_PROXY, _SCHEMA_HTTP, _SCHEMA_HTTPS, _SCHEMA_SOCKS):
        if source.lookup(schema, True) is None:
            return False
    return True


def _gio_settings(schema: str):
    if Gio is None:
        raise SystemProxyUnavailableError(
            "Gio backend unavailable",
            user_message="System proxy backend unavailable.",
        )
    try:
        return Gio.Settings.new(schema)
    except Exception as exc:
        logger.exception("Failed to create Gio.Settings for schema=%s", schema)
        raise SystemProxyUnavailableError(
            f"Failed to open schema: {schema}: {exc}",
            user_message="Failed to access GNOME proxy settings.",
        ) from exc


class GnomeSettingsBackend:
    """``org.gnome.system.proxy`` through Gio or the ``gsettings`` CLI.

    GNOME has no single server string; one is reconstructed from the stored
    hosts and ports so it compares like the Windows ``ProxyServer`` value.
    """

    def __init__(self, kind: GnomeBackendName) -> None:
        self.kind = kind
        self.name = kind

    def _read(self, spec: _SettingSpec) -> Any:
        if self.kind == "gio":
            settings = _gio_settings(spec.schema)
            try:
                if spec.kind == "string":
                    return str(settings.get_string(spec.key)).strip()
                if spec.kind == "bool":
                    return bool(settings.get_boolean(spec.key))
                if spec.kind == "int":
                    return int(settings.get_int(spec.key))
                return [str(v).strip() for v in settings.get_strv(spec.key) if str(v).strip()]
            except Exception as exc:
                logger.exception("Failed to read Gio setting: %s:%s", spec.schema, spec.key)
                raise SystemProxyUnavailableError(
                    f"Failed to read Gio setting {spec.schema}:{spec.key}: {exc}",
                    user_message="Failed to read GNOME proxy settings.",
                ) from exc

        raw = _run(["gsettings", "get", spec.schema, spec.key], timeout_s=2.5).stdout.strip()
        return _decode_value(raw, spec.kind)

    def _write(self, spec: _SettingSpec, value: Any) -> None:
        if self.kind == "gio":
            settings = _gio_settings(spec.schema)
            try:
                if spec.kind == "string":
                    settings.set_string(spec.key, str(value or ""))
                elif spec.kind == "bool":
                    settings.set_boolean(spec.key, bool(value))
                elif spec.kind == "int":
                    settings.set_int(spec.key, int(value))
                else:
                    settings.set_strv(spec.key, list(value))
                if settings.get_has_unapplied():
                    settings.apply()
                return
            except Exception as exc:
                logger.exception("Failed to write Gio setting: %s:%s", spec.schema, spec.key)
                raise SystemProxyUnavailableError(
                    f"Failed to write Gio setting {spec.schema}:{spec.key}: {exc}",
                    user_message="Failed to apply GNOME proxy settings.",
                ) from exc

        encoded = _encode_for_gsettings(spec.kind, value)
        _run(["gsettings", "set", spec.schema, spec.key, encoded], timeout_s=2.5)

    def read(self) -> SystemProxyState:
        mode = str(self._read(_MODE_SPEC)).strip().lower()
        http_host = str(self._read(_HTTP_HOST_SPEC))
        http_port = int(self._read(_HTTP_PORT_SPEC))
        server = ""
        if http_host and http_port > 0:
            server = f"{http_host}:{http_port}"
        else:
            socks_host = str(self._read(_SOCKS_HOST_SPEC))
            socks_port = int(self._read(_SOCKS_PORT_SPEC))
            if socks_host and socks_port > 0:
                server = f"{SOCKS_PREFIX}{socks_host}:{socks_port}"
        return SystemProxyState(enabled=mode == "manual", server=server)

    def enable(self, server: str) -> None:
        socks_only = server.lower().startswith(SOCKS_PREFIX)
        host, port = _split_server(server[len(SOCKS_PREFIX):] if socks_only else server)

        existing = cast(list[str], self._read(_IGNORE_HOSTS_SPEC))
        ignore_hosts = _merge_ignore_hosts(existing, _DEFAULT_IGNORE_HOSTS)

        http_host, http_port = ("", 0) if socks_only else (host, port)
        self._write(_HTTP_ENABLED_SPEC, not socks_only)
        self._write(_HTTP_HOST_SPEC, http_host)
        self._write(_HTTP_PORT_SPEC, http_port)
        self._write(_HTTPS_HOST_SPEC, http_host)
        self._write(_HTTPS_PORT_SPEC, http_port)
        self._write(_SOCKS_HOST_SPEC, host)
        self._write(_SOCKS_PORT_SPEC, port)
        self._write(_USE_SAME_PROXY_SPEC, False)
        self._write(_IGNORE_HOSTS_SPEC, ignore_hosts)
        self._write(_MODE_SPEC, "manual")

    def disable(self) -> None:
        self._write(_MODE_SPEC, "none")

    def notify(self) -> None:
        if self.kind != "gio" or Gio is None:
            return
        try:
            Gio.Settings.sync()
        except Exception as exc:
            logger.exception("Failed to sync Gio settings")
            raise SystemProxyUnavailableError(
                f"Failed to sync GNOME settings: {exc}",
                user_message="Failed to commit GNOME proxy settings.",
            ) from exc


def _split_server(server: str) -> tuple[str, int]:
    host, sep, raw_port = server.strip().rpartition(":")
    if not sep or not host:
        raise SystemProxyUnavailableError(
            f"Invalid proxy server address: {server!r}",
            user_message="Proxy server address is invalid.",
        )
    try:
        return host, int(raw_port)
    except ValueError as exc:
        raise SystemProxyUnavailableError(
            f"Invalid proxy server port: {server!r}",
            user_message="Proxy server address is invalid.",
        ) from exc


def detect_backend() -> ProxyBackend | None:
    if sys.platform == "win32":
        return WindowsRegistryBackend()
    if _gio_available():
        return GnomeSettingsBackend("gio")
    if _gsettings_available():
        return GnomeSettingsBackend("gsettings")
    return None


# --- Controller ------------------------------------------------------------


def expected_address(config: CoreConfig) -> str | None:
    """Address the system proxy should point at for ``config``, if any."""
    if config.mixed_port and config.mixed_port > 0:
        return f"{LOOPBACK_HOST}:{config.mixed_port}"
    if config.socks_port and config.socks_port > 0:
        return f"{SOCKS_PREFIX}{LOOPBACK_HOST}:{config.socks_port}"
    return None


class SystemProxyController:
    def __init__(self, backend: ProxyBackend | None = None, *, detect: bool = True) -> None:
        if backend is None and detect:
            backend = detect_backend()
        self._backend = backend
        if backend is None:
            logger.warning("No system proxy backend available in this environment")
        else:
            logger.info("System proxy backend: %s", backend.name)

    def is_supported(self) -> bool:
        return self._backend is not None

    def _require_backend(self) -> ProxyBackend:
        if self._backend is None:
            raise SystemProxyUnavailableError(
                "System proxy backend unavailable",
                user_message="System proxy is not supported on this desktop/session.",
            )
        return self._backend

    def read_state(self) -> SystemProxyState:
        return self._require_backend().read()

    def is_enabled(self, expected: str) -> bool:
        state = self.read_state()
        return state.enabled and state.server.strip().lower() == expected.strip().lower()

    def enable(self, address: str) -> None:
        backend = self._require_backend()
        backend.enable(address)
        backend.notify()
        logger.info("System proxy enabled: %s", address)

    def disable(self) -> None:
        backend = self._require_backend()
        backend.disable()
        backend.notify()
        logger.info("System proxy disabled")
