"""HTTP client for the proxy core's control API.

The client keeps no state besides its credentials. Reads (config, topology)
absorb failures and return ``None`` so callers can fall back to cached data;
user-initiated mutations raise typed errors so the caller can revert and
notify. A client built without a base URL is inert: every call is a no-op.
"""

from __future__ import annotations

import http.client
import json
import logging
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from clashtray.core.errors import CommandRejectedError, CoreUnreachableError
from clashtray.core.logging_setup import redact
from clashtray.core.models import CoreConfig, Topology, parse_topology

logger = logging.getLogger(__name__)

LATENCY_TEST_URL = "https://www.gstatic.com/generate_204"
LATENCY_TIMEOUT_MS = 5000
REQUEST_TIMEOUT_S = 5.0


class ControlApiClient:
    def __init__(
        self,
        base_url: str | None,
        secret: str | None = None,
        *,
        timeout_s: float = REQUEST_TIMEOUT_S,
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self._secret = secret or None
        self._timeout_s = timeout_s
        # The control API is loopback; never route it through the system proxy.
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def get_config(self) -> CoreConfig | None:
        if not self.enabled:
            return None
        try:
            payload = self._request("GET", "/configs")
        except (CoreUnreachableError, CommandRejectedError) as exc:
            logger.warning("Failed to fetch core config: %s", exc)
            return None
        if not isinstance(payload, dict):
            logger.warning("Unexpected /configs payload: %r", type(payload).__name__)
            return None
        return CoreConfig.from_dict(payload)

    def get_topology(self) -> Topology | None:
        if not self.enabled:
            return None
        try:
            payload = self._request("GET", "/proxies")
        except (CoreUnreachableError, CommandRejectedError) as exc:
            logger.warning("Failed to fetch proxy topology: %s", exc)
            return None
        topology = parse_topology(payload)
        if topology is None:
            logger.warning("Unexpected /proxies payload")
        return topology

    def set_mode(self, mode: str) -> None:
        if not self.enabled:
            return
        self._request("PATCH", "/configs", {"mode": mode})

    def set_tun(self, enabled: bool) -> None:
        if not self.enabled:
            return
        self._request("PATCH", "/configs", {"tun": {"enable": bool(enabled)}})

    def select_node(self, group: str, node: str) -> None:
        if not self.enabled:
            return
        self._request("PUT", f"/proxies/{_quote(group)}", {"name": node})

    def reload_config(self, path: str) -> None:
        if not self.enabled:
            return
        self._request("PUT", "/configs?force=true", {"path": path})

    def probe_group_latency(self, group: str) -> None:
        self._probe(f"/group/{_quote(group)}/delay")

    def probe_node_latency(self, node: str) -> None:
        self._probe(f"/proxies/{_quote(node)}/delay")

    def _probe(self, path: str) -> None:
        if not self.enabled:
            return
        query = urllib.parse.urlencode({"url": LATENCY_TEST_URL, "timeout": LATENCY_TIMEOUT_MS})
        try:
            self._request(
                "GET",
                f"{path}?{query}",
                timeout_s=LATENCY_TIMEOUT_MS / 1000 + 1.0,
            )
        except (CoreUnreachableError, CommandRejectedError) as exc:
            logger.debug("Latency probe failed for %s: %s", path, exc)

    def _headers(self, has_body: bool) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if has_body:
            headers["Content-Type"] = "application/json"
        if self._secret:
            headers["Authorization"] = f"Bearer {self._secret}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        try:
            request = urllib.request.Request(
                url,
                data=data,
                headers=self._headers(data is not None),
                method=method,
            )
            with self._opener.open(request, timeout=timeout_s or self._timeout_s) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            detail = _error_detail(exc)
            raise CommandRejectedError(
                f"{method} {path} failed: HTTP {exc.code} {detail}",
                user_message=f"Core rejected the request (HTTP {exc.code}){': ' + detail if detail else ''}.",
                status=exc.code,
            ) from exc
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError, ValueError) as exc:
            raise CoreUnreachableError(
                f"{method} {path} failed: {redact(str(exc))}",
                user_message="Failed to connect to the proxy core.",
            ) from exc

        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CommandRejectedError(
                f"{method} {path} returned invalid JSON: {exc}",
                user_message="Core returned an unreadable response.",
            ) from exc


def _quote(segment: str) -> str:
    return urllib.parse.quote(segment, safe="")


def _error_detail(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read()
    except OSError:
        return str(exc.reason or "")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, AttributeError):
        return str(exc.reason or "")
    if isinstance(payload, dict) and payload.get("message"):
        return redact(str(payload["message"]))
    return str(exc.reason or "")
