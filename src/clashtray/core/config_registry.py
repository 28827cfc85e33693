"""Proxy-core config files and the persisted "current config" pointer."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from clashtray.core.models import ApiCredentials
from clashtray.core.storage import get_profiles_dir, get_settings_path, load_json, save_json

logger = logging.getLogger(__name__)

CONFIG_SUFFIXES = (".yaml", ".yml")
DEFAULT_CONFIG_NAME = "config.yaml"
CURRENT_CONFIG_KEY = "current_config"
DEFAULT_CONTROLLER_HOST = "127.0.0.1"

DEFAULT_CONFIG: dict[str, Any] = {
    "mixed-port": 7890,
    "allow-lan": False,
    "mode": "rule",
    "log-level": "info",
    "external-controller": "127.0.0.1:9090",
    "proxies": [],
    "proxy-groups": [],
    "rules": ["MATCH,DIRECT"],
}


def parse_controller_address(raw: Any) -> str | None:
    """Turn an ``external-controller`` value into a base URL."""
    text = str(raw or "").strip()
    if not text:
        return None
    if "://" in text:
        text = text.split("://", 1)[1]
    text = text.rstrip("/")

    host, sep, port = text.rpartition(":")
    if not sep or not port.isdigit():
        return None
    host = host.strip("[]")
    if host in {"", "0.0.0.0", "::"}:
        host = DEFAULT_CONTROLLER_HOST
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}"


def read_credentials(path: Path) -> ApiCredentials | None:
    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to read config %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping", path)
        return None

    base_url = parse_controller_address(data.get("external-controller"))
    if base_url is None:
        logger.warning("Config %s has no usable external-controller", path)
        return None

    secret = data.get("secret")
    secret = str(secret) if secret not in (None, "") else None
    dashboard_url = f"{base_url}/ui" if data.get("external-ui") else None
    return ApiCredentials(base_url=base_url, secret=secret, dashboard_url=dashboard_url)


class ConfigRegistry:
    def __init__(self, config_dir: Path | None = None, settings_path: Path | None = None) -> None:
        self.config_dir = config_dir or get_profiles_dir()
        self.settings_path = settings_path or get_settings_path()

    def load_settings(self) -> dict[str, Any]:
        data = load_json(self.settings_path, {})
        return data if isinstance(data, dict) else {}

    def _update_settings(self, **values: Any) -> None:
        settings = self.load_settings()
        settings.update(values)
        save_json(self.settings_path, settings)

    def list_available(self) -> list[Path]:
        if not self.config_dir.is_dir():
            return []
        return sorted(
            (p for p in self.config_dir.iterdir() if p.is_file() and p.suffix.lower() in CONFIG_SUFFIXES),
            key=lambda p: p.name.lower(),
        )

    def ensure_default_exists(self) -> Path | None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        if self.list_available():
            return None
        path = self.config_dir / DEFAULT_CONFIG_NAME
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(DEFAULT_CONFIG, handle, sort_keys=False, allow_unicode=True)
        logger.info("Created default config: %s", path)
        self.set_current(path)
        return path

    def get_current(self) -> Path | None:
        raw = self.load_settings().get(CURRENT_CONFIG_KEY)
        if isinstance(raw, str) and raw.strip():
            path = Path(raw)
            if path.is_file():
                return path
            logger.warning("Saved config no longer exists: %s", path)
        available = self.list_available()
        return available[0] if available else None

    def set_current(self, path: Path) -> None:
        self._update_settings(**{CURRENT_CONFIG_KEY: str(Path(path))})

    def get_core_path(self) -> str | None:
        raw = self.load_settings().get("core_path")
        return raw if isinstance(raw, str) and raw.strip() else None
