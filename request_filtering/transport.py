"""Plain TCP connections that report their lifecycle through listeners.

``SocketConnection.connect`` follows the same resolve-then-try-each-candidate
loop as ``urllib3.util.connection.create_connection``, but announces every
candidate address with a ``lookup`` event before connecting to it. Listeners
run synchronously, so a listener that destroys the connection stops the loop
before any byte reaches the candidate.

Events and their arguments:

- ``lookup(error, address, family, host)``: resolution produced a candidate
  (or failed, with ``error`` set). Not emitted for literal IP hosts.
- ``connect()`` then ``ready()``: the TCP handshake completed.
- ``close(had_error)``: the connection was destroyed.
"""
import socket
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .address import is_ip

EVENTS = ("lookup", "connect", "ready", "close")

_FAMILY_BY_AF = {socket.AF_INET: 4, socket.AF_INET6: 6}
_AF_BY_FAMILY = {4: socket.AF_INET, 6: socket.AF_INET6}


@dataclass(frozen=True)
class ConnectOptions:
    host: str
    port: int
    family: int = 0  # 0 (any), 4 or 6
    timeout: Optional[float] = None  # None keeps the socket module default
    source_address: Optional[Tuple[str, int]] = None
    socket_options: Sequence[tuple] = ()


class SocketConnection:
    def __init__(self, options: ConnectOptions, resolver=None, connect_listener=None):
        self.options = options
        self._resolver = resolver or socket.getaddrinfo
        self._listeners = {event: [] for event in EVENTS}
        self.sock: Optional[socket.socket] = None
        self.destroyed = False
        self.error: Optional[BaseException] = None
        self._ended = False
        if connect_listener is not None:
            self.add_listener("connect", connect_listener)

    def add_listener(self, event, listener):
        self._listeners[event].append(listener)

    def remove_listener(self, event, listener):
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event) -> int:
        return len(self._listeners[event])

    def emit(self, event, *args):
        for listener in list(self._listeners[event]):
            listener(*args)

    def _closed_error(self):
        if self.error is not None:
            return self.error
        return ConnectionAbortedError("Socket is closed")

    def _resolve(self):
        host = self.options.host
        family = _AF_BY_FAMILY.get(self.options.family, socket.AF_UNSPEC)
        try:
            infos = self._resolver(host, self.options.port, family, socket.SOCK_STREAM)
        except OSError as exc:
            if not is_ip(host):
                self.emit("lookup", exc, None, None, host)
            raise
        if not infos:
            raise OSError("getaddrinfo returns an empty list")
        return infos

    def _open_socket(self, af, socktype, proto, sockaddr):
        sock = socket.socket(af, socktype, proto)
        try:
            for opt in self.options.socket_options or ():
                sock.setsockopt(*opt)
            if self.options.timeout is not None:
                sock.settimeout(self.options.timeout)
            if self.options.source_address:
                sock.bind(self.options.source_address)
            sock.connect(sockaddr)
        except OSError:
            sock.close()
            raise
        return sock

    def connect(self) -> socket.socket:
        """Resolve, announce and connect; returns the connected socket."""
        if self.destroyed:
            raise self._closed_error()

        announce = not is_ip(self.options.host)
        err = None
        for af, socktype, proto, _canonname, sockaddr in self._resolve():
            if announce:
                self.emit("lookup", None, sockaddr[0], _FAMILY_BY_AF.get(af, af), self.options.host)
            if self.destroyed:
                raise self._closed_error()
            try:
                sock = self._open_socket(af, socktype, proto, sockaddr)
            except OSError as exc:
                err = exc
                continue

            self.sock = sock
            self.emit("connect")
            self.emit("ready")
            if self.destroyed:
                raise self._closed_error()
            return sock

        raise err

    def end(self, callback=None):
        """Half-close the write side, then run ``callback``."""
        if not self._ended and not self.destroyed:
            self._ended = True
            if self.sock is not None:
                try:
                    self.sock.shutdown(socket.SHUT_WR)
                except OSError:
                    # not connected yet, or already reset by the peer
                    pass
        if callback is not None:
            callback()

    def destroy(self, error=None):
        if self.destroyed:
            return
        self.destroyed = True
        self.error = error
        sock, self.sock = self.sock, None
        if sock is not None:
            sock.close()
        self.emit("close", error is not None)


class SocketConnectionFactory:
    """Creates unconnected SocketConnections resolved through ``resolver``."""

    def __init__(self, resolver=None):
        self.resolver = resolver or socket.getaddrinfo

    def create_connection(self, options: ConnectOptions, connect_listener=None) -> SocketConnection:
        return SocketConnection(options, resolver=self.resolver, connect_listener=connect_listener)
