"""requests transport adapters that open every connection through a gate.

urllib3 creates sockets in ``HTTPConnection._new_conn``; the gated connection
classes route that call through :class:`ConnectionGate` and keep urllib3's
error mapping, so a denial reaches the caller as an ordinary
``requests.ConnectionError`` (raised here as :class:`DeniedConnectionError`).

Usage::

    session = requests.Session()
    session.mount("http://", use_adapter("http://example.com"))
    session.mount("https://", use_adapter("https://example.com"))

or simply ``filtering_session()``.
"""
import functools
import socket
import sys

import requests
from requests.adapters import DEFAULT_POOLBLOCK, HTTPAdapter
from requests.utils import urldefragauth
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import ConnectTimeoutError, NameResolutionError, NewConnectionError
from urllib3.util.connection import allowed_gai_family

from .errors import DeniedConnectionError, PolicyDenialError
from .gate import ConnectionGate
from .policy import DEFAULT_CONFIG, PolicyConfig
from .transport import ConnectOptions
from .utils import audit

_ADAPTER_OPTIONS = ("pool_connections", "pool_maxsize", "max_retries", "pool_block")


def _connect_timeout(value):
    # urllib3 marks "use the default" with a private sentinel
    if value is None or isinstance(value, (int, float)):
        return value
    return socket.getdefaulttimeout()


class _GatedConnectionMixin:
    def __init__(self, *args, gate=None, **kwargs):
        self._gate = gate if gate is not None else ConnectionGate(DEFAULT_CONFIG)
        super().__init__(*args, **kwargs)

    def _new_conn(self):
        options = ConnectOptions(
            host=self._dns_host,
            port=self.port,
            family=4 if allowed_gai_family() == socket.AF_INET else 0,
            timeout=_connect_timeout(self.timeout),
            source_address=self.source_address,
            socket_options=tuple(self.socket_options or ()),
        )
        try:
            sock = self._gate.open(options)
        except socket.gaierror as e:
            raise NameResolutionError(self.host, self, e) from e
        except socket.timeout as e:
            raise ConnectTimeoutError(
                self,
                f"Connection to {self.host} timed out. (connect timeout={self.timeout})",
            ) from e
        except OSError as e:
            raise NewConnectionError(self, f"Failed to establish a new connection: {e}") from e

        sys.audit("http.client.connect", self, self.host, self.port)
        return sock


class GatedHTTPConnection(_GatedConnectionMixin, HTTPConnection):
    pass


class GatedHTTPSConnection(_GatedConnectionMixin, HTTPSConnection):
    pass


class GatedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = GatedHTTPConnection


class GatedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = GatedHTTPSConnection


_GATED_POOLS = {
    "http": GatedHTTPConnectionPool,
    "https": GatedHTTPSConnectionPool,
}


def _install_gate(pool_manager, gate, schemes):
    # The gate travels as a pool kwarg, which urllib3 hands on to ConnectionCls.
    pool_classes = dict(pool_manager.pool_classes_by_scheme)
    for scheme in schemes:
        pool_classes[scheme] = functools.partial(_GATED_POOLS[scheme], gate=gate)
    pool_manager.pool_classes_by_scheme = pool_classes


def find_denial(exc):
    """Return the PolicyDenialError behind a requests/urllib3 error, if any."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, PolicyDenialError):
            return current
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            pending.append(reason)
        pending.extend(arg for arg in getattr(current, "args", ()) if isinstance(arg, BaseException))
        pending.append(current.__cause__)
        pending.append(current.__context__)
    return None


def _split_options(options):
    """Separate filtering options from HTTPAdapter keyword arguments."""
    if options is None or isinstance(options, PolicyConfig):
        return options, {}
    filter_options = {}
    adapter_kwargs = {}
    for key, value in dict(options).items():
        if key in _ADAPTER_OPTIONS:
            adapter_kwargs[key] = value
        else:
            filter_options[key] = value
    return filter_options, adapter_kwargs


class RequestFilteringAdapter(HTTPAdapter):
    """HTTPAdapter whose connections are checked against an address policy.

    ``options`` takes the camelCase keys (``allowPrivateIPAddress``,
    ``allowMetaIPAddress``, ``allowIPAddressList``, ``denyIPAddressList``,
    ``stopPortScanningByUrlRedirection``), their snake_case equivalents, or a
    PolicyConfig. ``connection_factory`` replaces the inner socket factory.
    """

    schemes = ("http", "https")
    prefixes = ("http://", "https://")
    __attrs__ = HTTPAdapter.__attrs__ + ["gate"]

    def __init__(self, options=None, connection_factory=None, **kwargs):
        # init_poolmanager runs inside HTTPAdapter.__init__ and needs the gate
        self.gate = ConnectionGate(options, inner=connection_factory)
        super().__init__(**kwargs)

    @property
    def policy_config(self):
        return self.gate.config

    def init_poolmanager(self, connections, maxsize, block=DEFAULT_POOLBLOCK, **pool_kwargs):
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        _install_gate(self.poolmanager, self.gate, self.schemes)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        # The proxy resolves and connects to the target itself, out of the
        # gate's reach, so proxied requests are refused.
        audit("PROXY", f"refusing to route through {urldefragauth(proxy)}", "BLOCKED")
        raise DeniedConnectionError(
            f"Proxied requests bypass request filtering and are refused: {urldefragauth(proxy)}"
        )

    def send(self, request, **kwargs):
        try:
            return super().send(request, **kwargs)
        except requests.exceptions.ConnectionError as exc:
            denial = find_denial(exc)
            if denial is None:
                raise
            raise DeniedConnectionError(*exc.args, request=request, denial=denial) from exc

    def mount(self, session):
        for prefix in self.prefixes:
            session.mount(prefix, self)
        return session


class RequestFilteringHTTPAdapter(RequestFilteringAdapter):
    schemes = ("http",)
    prefixes = ("http://",)


class RequestFilteringHTTPSAdapter(RequestFilteringAdapter):
    schemes = ("https",)
    prefixes = ("https://",)


def apply_request_filter(adapter, options=None, connection_factory=None):
    """Gate an existing HTTPAdapter in place; applying twice is a no-op."""
    if isinstance(getattr(adapter, "gate", None), ConnectionGate):
        return adapter
    adapter.gate = ConnectionGate(options, inner=connection_factory)
    _install_gate(adapter.poolmanager, adapter.gate, RequestFilteringAdapter.schemes)
    return adapter


global_http_adapter = RequestFilteringHTTPAdapter(DEFAULT_CONFIG)
global_https_adapter = RequestFilteringHTTPSAdapter(DEFAULT_CONFIG)


def use_adapter(url, options=None):
    """Return the gated adapter for ``url``'s scheme.

    Without options the shared default adapters are returned; otherwise a
    new adapter is configured from ``options``.
    """
    secure = str(url).strip().lower().startswith("https")
    if options is None:
        return global_https_adapter if secure else global_http_adapter
    filter_options, adapter_kwargs = _split_options(options)
    adapter_cls = RequestFilteringHTTPSAdapter if secure else RequestFilteringHTTPAdapter
    return adapter_cls(filter_options, **adapter_kwargs)


def filtering_session(options=None, connection_factory=None):
    """A requests.Session with gated adapters mounted for http and https.

    Proxy environment variables are ignored; the adapters refuse proxied
    requests.
    """
    session = requests.Session()
    session.trust_env = False
    if options is None and connection_factory is None:
        adapters = (global_http_adapter, global_https_adapter)
    else:
        filter_options, adapter_kwargs = _split_options(options)
        adapters = (
            RequestFilteringHTTPAdapter(filter_options, connection_factory, **adapter_kwargs),
            RequestFilteringHTTPSAdapter(filter_options, connection_factory, **adapter_kwargs),
        )
    for adapter in adapters:
        adapter.mount(session)
    return session
