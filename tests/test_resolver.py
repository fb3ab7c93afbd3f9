"""Tests for system-first name resolution with DoH fallback."""

import socket
from unittest.mock import MagicMock

import pytest
import requests
from urllib3.exceptions import NameResolutionError, NewConnectionError

from monitor import resolver as resolver_module
from monitor.resolver import (
    DohLookup,
    FallbackResolver,
    ResolvingAdapter,
    _ResolvingHTTPConnection,
    system_lookup,
)


def _doh_response(answers, status=200):
    response = MagicMock()
    response.json.return_value = {"Status": 0, "Answer": answers} if answers is not None else {"Status": 3}
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status}")
    return response


class TestSystemLookup:
    def test_deduplicates_addresses(self, monkeypatch):
        def fake_getaddrinfo(host, port, type=0):
            return [
                (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.1", 0)),
                (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.1", 0)),
                (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("::1", 0, 0, 0)),
            ]

        monkeypatch.setattr(resolver_module.socket, "getaddrinfo", fake_getaddrinfo)
        assert system_lookup("example.org") == ["10.0.0.1", "::1"]


class TestDohLookup:
    def test_returns_a_records(self):
        session = MagicMock()
        session.get.return_value = _doh_response(
            [
                {"name": "example.org", "type": 5, "data": "alias.example.org."},
                {"name": "alias.example.org", "type": 1, "data": "93.184.216.34"},
            ]
        )
        lookup = DohLookup(url="https://1.1.1.1/dns-query", session=session)

        assert lookup("example.org") == ["93.184.216.34"]
        _, kwargs = session.get.call_args
        assert kwargs["params"] == {"name": "example.org", "type": "A"}
        assert kwargs["headers"]["accept"] == "application/dns-json"

    def test_falls_back_to_aaaa(self):
        session = MagicMock()
        session.get.side_effect = [
            _doh_response(None),
            _doh_response([{"type": 28, "data": "2606:2800::1"}]),
        ]
        assert DohLookup(session=session)("example.org") == ["2606:2800::1"]
        assert session.get.call_count == 2

    def test_no_answer_raises_gaierror(self):
        session = MagicMock()
        session.get.return_value = _doh_response([])
        with pytest.raises(socket.gaierror):
            DohLookup(session=session)("nothing.invalid")

    def test_http_error_propagates(self):
        session = MagicMock()
        session.get.return_value = _doh_response([], status=503)
        with pytest.raises(requests.HTTPError):
            DohLookup(session=session)("example.org")


class TestFallbackResolver:
    def test_primary_success_skips_fallback(self):
        fallback = MagicMock()
        resolver = FallbackResolver(primary=lambda host: ["10.0.0.1"], fallback=fallback)

        assert resolver.resolve("example.org") == ["10.0.0.1"]
        fallback.assert_not_called()

    def test_fallback_used_once_on_primary_failure(self):
        def primary(host):
            raise socket.gaierror(socket.EAI_NONAME, "no such host")

        fallback = MagicMock(return_value=["10.0.0.2"])
        resolver = FallbackResolver(primary=primary, fallback=fallback)

        assert resolver.resolve("example.org") == ["10.0.0.2"]
        fallback.assert_called_once_with("example.org")

    def test_primary_error_reraised_when_both_fail(self):
        primary_error = socket.gaierror(socket.EAI_NONAME, "system says no")

        def primary(host):
            raise primary_error

        fallback = MagicMock(side_effect=requests.ConnectionError("doh down"))
        resolver = FallbackResolver(primary=primary, fallback=fallback)

        with pytest.raises(socket.gaierror) as excinfo:
            resolver.resolve("example.org")
        assert excinfo.value is primary_error
        assert fallback.call_count == 1


class TestResolvingConnection:
    def _connection(self, resolver):
        conn_cls = type("Conn", (_ResolvingHTTPConnection,), {"resolver": resolver})
        return conn_cls("api.example.org", 8080, timeout=1.0)

    def test_connects_to_resolved_address(self, monkeypatch):
        resolver = FallbackResolver(primary=lambda host: ["10.0.0.9"], fallback=MagicMock())
        sock = MagicMock()
        calls = []

        def fake_create_connection(address, timeout, **kwargs):
            calls.append(address)
            return sock

        monkeypatch.setattr(resolver_module.connection, "create_connection", fake_create_connection)
        conn = self._connection(resolver)

        assert conn._new_conn() is sock
        assert calls == [("10.0.0.9", 8080)]
        assert conn.host == "api.example.org"

    def test_tries_next_address_on_failure(self, monkeypatch):
        resolver = FallbackResolver(
            primary=lambda host: ["10.0.0.1", "10.0.0.2"], fallback=MagicMock()
        )
        sock = MagicMock()

        def fake_create_connection(address, timeout, **kwargs):
            if address[0] == "10.0.0.1":
                raise ConnectionRefusedError("refused")
            return sock

        monkeypatch.setattr(resolver_module.connection, "create_connection", fake_create_connection)
        assert self._connection(resolver)._new_conn() is sock

    def test_all_addresses_failing(self, monkeypatch):
        resolver = FallbackResolver(primary=lambda host: ["10.0.0.1"], fallback=MagicMock())

        def refuse(address, timeout, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(resolver_module.connection, "create_connection", refuse)
        with pytest.raises(NewConnectionError):
            self._connection(resolver)._new_conn()

    def test_resolution_failure(self):
        def primary(host):
            raise socket.gaierror(socket.EAI_NONAME, "no such host")

        resolver = FallbackResolver(
            primary=primary, fallback=MagicMock(side_effect=socket.gaierror("nope"))
        )
        with pytest.raises(NameResolutionError):
            self._connection(resolver)._new_conn()


def test_adapter_installs_resolving_pools():
    resolver = FallbackResolver(primary=lambda host: ["127.0.0.1"], fallback=MagicMock())
    adapter = ResolvingAdapter(resolver)

    pools = adapter.poolmanager.pool_classes_by_scheme
    for scheme in ("http", "https"):
        conn_cls = pools[scheme].ConnectionCls
        assert conn_cls.resolver is resolver
        assert issubclass(conn_cls, resolver_module._ResolvingConnectionMixin)


def test_proxy_manager_uses_resolving_pools():
    resolver = FallbackResolver(primary=lambda host: ["127.0.0.1"], fallback=MagicMock())
    adapter = ResolvingAdapter(resolver)

    manager = adapter.proxy_manager_for("http://proxy.example.org:3128")
    for scheme in ("http", "https"):
        assert manager.pool_classes_by_scheme[scheme].ConnectionCls.resolver is resolver
    assert adapter.proxy_manager_for("http://proxy.example.org:3128") is manager
