import pytest

from lineinbridge.discovery import (
    DiscoveredServer,
    DiscoveryError,
    normalize_path,
    resolve_host,
    select_server,
    server_from_service,
)


def _server(url, **txt):
    return DiscoveredServer(
        base_url=url, register_path="/r", status_path="/s", txt=dict(txt)
    )


def test_normalize_path_adds_slash():
    assert normalize_path("api/x") == "/api/x"


def test_normalize_path_keeps_slash():
    assert normalize_path("/api/x") == "/api/x"


def test_resolve_host_prefers_ipv4():
    assert resolve_host(["fe80::1", "10.0.0.7"], "server.local.") == "10.0.0.7"


def test_resolve_host_falls_back_to_hostname():
    assert resolve_host(["fe80::1"], "server.local..") == "server.local"
    assert resolve_host([], "server.local.") == "server.local"


def test_server_from_service_defaults():
    server = server_from_service(["10.0.0.7"], "server.local.", 7090, {})
    assert server.base_url == "http://10.0.0.7:7090"
    assert server.register_path == "/api/linein/bridges/register"
    assert server.status_path == "/api/linein/bridges/{bridge_id}/status"
    assert server.txt == {}


def test_server_from_service_api_prefix():
    server = server_from_service([], "box.local.", 80, {"api": "/v2"})
    assert server.base_url == "http://box.local:80"
    assert server.register_path.startswith("/v2/")
    assert server.register_path.endswith("/linein/bridges/register")


def test_server_from_service_explicit_paths_normalized():
    txt = {"linein_register": "reg", "linein_status": "st/{bridge_id}"}
    server = server_from_service(["10.0.0.7"], "h", 1, txt)
    assert server.register_path == "/reg"
    assert server.status_path == "/st/{bridge_id}"
    assert server.txt == txt


def test_select_server_empty_raises():
    with pytest.raises(DiscoveryError):
        select_server([], "a", "b")


def test_select_server_single_ignores_preferences():
    only = _server("http://a:1", name="x")
    assert select_server([only], "other", "other") is only


def test_select_server_mac_wins_over_name():
    first = _server("http://a:1", name="wanted")
    second = _server("http://b:1", mac="02:00:00:00:00:01")
    assert select_server([first, second], "wanted", "02:00:00:00:00:01") is second


def test_select_server_by_name():
    first = _server("http://a:1", name="one")
    second = _server("http://b:1", name="two")
    assert select_server([first, second], "two", "02:00:00:00:00:09") is second


def test_select_server_defaults_to_first():
    first = _server("http://a:1")
    second = _server("http://b:1")
    assert select_server([first, second]) is first