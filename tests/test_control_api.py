from __future__ import annotations

import http.client
import io
import json
import types
import urllib.error
import urllib.parse

import pytest

from clashtray.core.control_api import ControlApiClient
from clashtray.core.errors import CommandRejectedError, CoreUnreachableError
from clashtray.core.models import CoreConfig


class _FakeResponse:
    def __init__(self, body: bytes = b"") -> None:
        self._body = body

    def read(self, _: int = -1) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def _install_opener(monkeypatch, handler):
    calls: list = []

    def fake_open(req, timeout):
        calls.append(req)
        return handler(req)

    monkeypatch.setattr(
        "urllib.request.build_opener",
        lambda *_handlers: types.SimpleNamespace(open=fake_open),
    )
    return calls


def _json(payload) -> _FakeResponse:
    return _FakeResponse(json.dumps(payload).encode("utf-8"))


def _http_error(req, code: int, message: str = "bad request"):
    body = io.BytesIO(json.dumps({"message": message}).encode("utf-8"))
    return urllib.error.HTTPError(req.full_url, code, "Bad Request", {}, body)


def test_get_config_parses_and_sends_bearer(monkeypatch) -> None:
    calls = _install_opener(
        monkeypatch,
        lambda _req: _json({"mode": "Rule", "mixed-port": 7890, "socks-port": 0, "tun": {"enable": True}}),
    )
    client = ControlApiClient("http://127.0.0.1:9090/", "s3cret")

    config = client.get_config()

    assert config == CoreConfig(mode="rule", mixed_port=7890, socks_port=0, tun_enabled=True)
    assert calls[0].full_url == "http://127.0.0.1:9090/configs"
    assert calls[0].get_method() == "GET"
    assert calls[0].get_header("Authorization") == "Bearer s3cret"


def test_no_secret_means_no_authorization_header(monkeypatch) -> None:
    calls = _install_opener(monkeypatch, lambda _req: _json({"mode": "direct"}))
    client = ControlApiClient("http://127.0.0.1:9090", None)

    client.get_config()

    assert not calls[0].has_header("Authorization")


def test_inert_client_makes_no_requests(monkeypatch) -> None:
    calls = _install_opener(monkeypatch, lambda _req: _json({}))
    client = ControlApiClient(None, "ignored")

    assert client.enabled is False
    assert client.get_config() is None
    assert client.get_topology() is None
    client.set_mode("rule")
    client.set_tun(True)
    client.select_node("Proxy", "hk")
    client.reload_config("/tmp/a.yaml")
    client.probe_group_latency("Proxy")
    assert calls == []


def test_reads_absorb_broken_http_responses(monkeypatch) -> None:
    failures = iter([http.client.BadStatusLine("garbage"), http.client.IncompleteRead(b"{", 10)])

    def broken(_req):
        raise next(failures)

    _install_opener(monkeypatch, broken)
    client = ControlApiClient("http://127.0.0.1:9090")

    assert client.get_config() is None
    assert client.get_topology() is None


def test_set_mode_on_non_http_listener_raises_unreachable(monkeypatch) -> None:
    def broken(_req):
        raise http.client.BadStatusLine("SSH-2.0-OpenSSH")

    _install_opener(monkeypatch, broken)
    client = ControlApiClient("http://127.0.0.1:9090")

    with pytest.raises(CoreUnreachableError):
        client.set_mode("global")


def test_base_url_without_scheme_reads_as_unreachable(monkeypatch) -> None:
    calls = _install_opener(monkeypatch, lambda _req: _json({"mode": "rule"}))
    client = ControlApiClient("127.0.0.1:9090")

    assert client.get_config() is None
    assert calls == []


def test_reads_absorb_connection_errors(monkeypatch) -> None:
    def refuse(_req):
        raise urllib.error.URLError("connection refused")

    _install_opener(monkeypatch, refuse)
    client = ControlApiClient("http://127.0.0.1:9090")

    assert client.get_config() is None
    assert client.get_topology() is None


def test_get_topology_parses_groups(monkeypatch) -> None:
    _install_opener(
        monkeypatch,
        lambda _req: _json(
            {"proxies": {"Proxy": {"name": "Proxy", "type": "Selector", "now": "hk", "all": ["hk"]}}}
        ),
    )
    topology = ControlApiClient("http://127.0.0.1:9090").get_topology()

    assert topology is not None
    assert topology["Proxy"].selected == "hk"
    assert topology["Proxy"].is_selector


def test_set_tun_sends_partial_patch_and_raises_on_rejection(monkeypatch) -> None:
    def reject(req):
        raise _http_error(req, 400, "tun not supported")

    calls = _install_opener(monkeypatch, reject)
    client = ControlApiClient("http://127.0.0.1:9090", "s")

    with pytest.raises(CommandRejectedError) as excinfo:
        client.set_tun(True)

    req = calls[0]
    assert req.get_method() == "PATCH"
    assert req.full_url == "http://127.0.0.1:9090/configs"
    assert json.loads(req.data) == {"tun": {"enable": True}}
    assert excinfo.value.status == 400
    assert "tun not supported" in excinfo.value.user_message


def test_set_mode_raises_unreachable_on_connection_error(monkeypatch) -> None:
    def refuse(_req):
        raise urllib.error.URLError("connection refused")

    _install_opener(monkeypatch, refuse)

    with pytest.raises(CoreUnreachableError):
        ControlApiClient("http://127.0.0.1:9090").set_mode("global")


def test_select_node_encodes_group_name(monkeypatch) -> None:
    calls = _install_opener(monkeypatch, lambda _req: _FakeResponse(b""))
    ControlApiClient("http://127.0.0.1:9090").select_node("My Group/1", "hk 01")

    req = calls[0]
    assert req.get_method() == "PUT"
    assert req.full_url == "http://127.0.0.1:9090/proxies/My%20Group%2F1"
    assert json.loads(req.data) == {"name": "hk 01"}


def test_reload_config_passes_raw_path(monkeypatch) -> None:
    calls = _install_opener(monkeypatch, lambda _req: _FakeResponse(b""))
    path = r"C:\Users\me\configs\my config.yaml"
    ControlApiClient("http://127.0.0.1:9090").reload_config(path)

    req = calls[0]
    assert req.get_method() == "PUT"
    assert req.full_url == "http://127.0.0.1:9090/configs?force=true"
    assert json.loads(req.data) == {"path": path}


def test_latency_probes_swallow_errors(monkeypatch) -> None:
    def reject(req):
        raise _http_error(req, 504, "timeout")

    calls = _install_opener(monkeypatch, reject)
    client = ControlApiClient("http://127.0.0.1:9090")

    client.probe_group_latency("Proxy")
    client.probe_node_latency("hk 01")

    group_url = urllib.parse.urlsplit(calls[0].full_url)
    node_url = urllib.parse.urlsplit(calls[1].full_url)
    assert group_url.path == "/group/Proxy/delay"
    assert node_url.path == "/proxies/hk%2001/delay"
    query = urllib.parse.parse_qs(group_url.query)
    assert query == {"url": ["https://www.gstatic.com/generate_204"], "timeout": ["5000"]}


def test_malformed_tun_defaults_to_disabled() -> None:
    assert CoreConfig.from_dict({"mode": "rule", "tun": {"enable": "yes"}}).tun_enabled is False
    assert CoreConfig.from_dict({"mode": "rule", "tun": None}).tun_enabled is False
    assert CoreConfig.from_dict({"mode": "rule"}).tun_enabled is False
