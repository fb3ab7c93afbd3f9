# =============================================================================
# Danger Monitor - Resilient Name Resolution
# =============================================================================
# Wearable devices often sit behind captive or filtering DNS. Host names are
# therefore resolved through the system resolver first and, only if that
# fails, through DNS-over-HTTPS (DoH). The DoH endpoint is addressed by IP so
# the bootstrap request itself needs no name resolution.
#
# ResolvingAdapter plugs the resolver into requests: its connection pools
# open sockets to the resolved address while TLS SNI, certificate checks and
# the Host header keep using the original host name.
# =============================================================================

import logging
import socket
from typing import Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import ConnectTimeoutError, NameResolutionError, NewConnectionError
from urllib3.util import connection

logger = logging.getLogger(__name__)

DEFAULT_DOH_URL = "https://1.1.1.1/dns-query"

# DNS record types in the DoH JSON answer format
_RECORD_A = 1
_RECORD_AAAA = 28

Lookup = Callable[[str], List[str]]


def system_lookup(host: str) -> List[str]:
    """
    Resolve ``host`` with the operating system resolver.

    Returns:
        Unique addresses in resolver order.

    Raises:
        socket.gaierror: When the host cannot be resolved.
    """
    addresses: List[str] = []
    for _family, _type, _proto, _canon, sockaddr in socket.getaddrinfo(
        host, None, type=socket.SOCK_STREAM
    ):
        if sockaddr[0] not in addresses:
            addresses.append(sockaddr[0])
    return addresses


class DohLookup:
    """
    DNS-over-HTTPS lookup using the JSON wire format.

    Queries A records first and falls back to AAAA. Uses a plain
    requests.Session without any custom resolution as the bootstrap client.

    Args:
        url:     DoH endpoint accepting ``application/dns-json`` queries.
        session: Bootstrap session; a new one is created when omitted.
        timeout: Per-query timeout in seconds.
    """

    def __init__(
        self,
        url: str = DEFAULT_DOH_URL,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        self._url = url
        self._session = session or requests.Session()
        self._timeout = timeout

    def _query(self, host: str, record_type: str, type_code: int) -> List[str]:
        response = self._session.get(
            self._url,
            params={"name": host, "type": record_type},
            headers={"accept": "application/dns-json"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        answers = response.json().get("Answer") or []
        return [a["data"] for a in answers if a.get("type") == type_code]

    def __call__(self, host: str) -> List[str]:
        addresses = self._query(host, "A", _RECORD_A)
        if not addresses:
            addresses = self._query(host, "AAAA", _RECORD_AAAA)
        if not addresses:
            raise socket.gaierror(socket.EAI_NONAME, f"DoH returned no address for {host}")
        logger.debug("DoH resolved %s -> %s", host, addresses)
        return addresses


class FallbackResolver:
    """
    System resolver first, secondary lookup only on failure.

    If both lookups fail the primary lookup's exception is re-raised, since
    it describes the network the device is actually on.

    Args:
        primary:  Lookup tried first (normally system_lookup).
        fallback: Lookup tried once when the primary raises.
    """

    def __init__(self, primary: Lookup = system_lookup, fallback: Optional[Lookup] = None):
        self._primary = primary
        self._fallback = fallback or DohLookup()

    @classmethod
    def with_doh(cls, url: str = DEFAULT_DOH_URL, timeout: float = 10.0) -> "FallbackResolver":
        return cls(primary=system_lookup, fallback=DohLookup(url=url, timeout=timeout))

    def resolve(self, host: str) -> List[str]:
        try:
            return self._primary(host)
        except OSError as primary_error:
            logger.warning("System DNS failed for %s (%s), trying DoH", host, primary_error)
            try:
                return self._fallback(host)
            except Exception:
                logger.exception("DoH also failed for %s", host)
                raise primary_error


# ---------------------------------------------------------------------------
# requests / urllib3 integration
# ---------------------------------------------------------------------------

class _ResolvingConnectionMixin:
    """Replaces urllib3's socket creation with a FallbackResolver lookup."""

    resolver: Optional[FallbackResolver] = None

    def _new_conn(self) -> socket.socket:
        try:
            addresses = self.resolver.resolve(self._dns_host)
        except OSError as exc:
            raise NameResolutionError(self.host, self, exc) from exc

        last_error: Optional[OSError] = None
        for address in addresses:
            try:
                return connection.create_connection(
                    (address, self.port),
                    self.timeout,
                    source_address=self.source_address,
                    socket_options=self.socket_options,
                )
            except socket.timeout as exc:
                raise ConnectTimeoutError(
                    self,
                    f"Connection to {self.host} timed out. (connect timeout={self.timeout})",
                ) from exc
            except OSError as exc:
                logger.debug("Connect to %s (%s) failed: %s", self.host, address, exc)
                last_error = exc

        raise NewConnectionError(
            self, f"Failed to establish a new connection: {last_error}"
        ) from last_error


class _ResolvingHTTPConnection(_ResolvingConnectionMixin, HTTPConnection):
    pass


class _ResolvingHTTPSConnection(_ResolvingConnectionMixin, HTTPSConnection):
    pass


def _bind_pool(pool_cls, conn_cls, resolver: FallbackResolver):
    """Create a pool class whose connections resolve through ``resolver``."""
    bound_conn = type(conn_cls.__name__, (conn_cls,), {"resolver": resolver})
    return type(pool_cls.__name__, (pool_cls,), {"ConnectionCls": bound_conn})


class ResolvingAdapter(HTTPAdapter):
    """
    Transport adapter routing all connections through a FallbackResolver.

    Mount it on a session for both ``http://`` and ``https://``. Behind an
    HTTP(S) proxy only the proxy's own host name goes through the resolver;
    the target host is resolved by the proxy. SOCKS proxies are left to
    urllib3's SOCKS support and bypass the resolver.
    """

    def __init__(self, resolver: FallbackResolver, **kwargs):
        self._resolver = resolver
        super().__init__(**kwargs)

    def _pool_classes(self):
        return {
            "http": _bind_pool(HTTPConnectionPool, _ResolvingHTTPConnection, self._resolver),
            "https": _bind_pool(HTTPSConnectionPool, _ResolvingHTTPSConnection, self._resolver),
        }

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        # Assign a fresh dict; the default one is shared module state in urllib3
        self.poolmanager.pool_classes_by_scheme = self._pool_classes()

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        created = proxy not in self.proxy_manager
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        if created and not proxy.lower().startswith("socks"):
            manager.pool_classes_by_scheme = self._pool_classes()
        return manager
