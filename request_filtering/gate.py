"""Connection gate: validates every address a connection may reach.

Validation happens in two phases:

1. Literal IP targets are checked before the inner factory is even asked for
   a connection, so a rejected literal never owns a socket.
2. Named targets are checked on every ``lookup`` event the connection emits.
   The first denial latches the attempt and tears the connection down with
   ``end`` followed by ``destroy(denial)``; later events for the same attempt
   are ignored.

A ConnectionAttempt belongs to exactly one connection. The gate itself keeps
no per-connection state and can be shared.
"""
from enum import Enum
from typing import Optional

from .address import ip_family, is_ip
from .errors import PolicyDenialError
from .policy import PolicyConfig, PolicyEvaluator
from .transport import ConnectOptions, SocketConnectionFactory
from .utils import audit

_WATCHED_EVENTS = ("lookup", "ready", "close")


class AttemptState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    REJECTING = "rejecting"
    REJECTED = "rejected"
    ADMITTED = "admitted"
    CLOSED = "closed"


class ConnectionAttempt:
    def __init__(self, host, evaluator: PolicyEvaluator, family=None):
        self.host = host
        self.family = family or None
        self.evaluator = evaluator
        self.state = AttemptState.PENDING
        # one-shot latch: set by the first terminal decision
        self.decided = False
        self.denial: Optional[PolicyDenialError] = None
        self.connection = None

    def preflight(self):
        """Check a literal IP target; raises PolicyDenialError if refused."""
        if self.decided or not is_ip(self.host):
            return
        outcome = self.evaluator.evaluate_target(self.host, ip_family(self.host))
        if outcome.allowed:
            return
        self.decided = True
        self.denial = outcome.error()
        self.state = AttemptState.REJECTED
        audit("CONNECT", self.denial, "BLOCKED")
        raise self.denial

    def _handlers(self):
        return (
            ("lookup", self.on_lookup),
            ("ready", self.on_ready),
            ("close", self.on_close),
        )

    def attach(self, connection):
        self.connection = connection
        if self.decided:
            return
        self.state = AttemptState.IN_FLIGHT
        for event, handler in self._handlers():
            connection.add_listener(event, handler)

    def detach(self):
        if self.connection is None:
            return
        for event, handler in self._handlers():
            self.connection.remove_listener(event, handler)

    def on_lookup(self, error, address, family, host):
        # resolution failures belong to the transport; let them through
        if error is not None or self.decided:
            return
        outcome = self.evaluator.evaluate(address, host=host, family=family)
        if outcome.allowed:
            return
        denial = outcome.error()
        audit("DNS_LOOKUP", denial, "BLOCKED")
        self.reject(denial)

    def on_ready(self):
        if self.decided:
            return
        self.decided = True
        self.state = AttemptState.ADMITTED
        self.detach()

    def on_close(self, had_error=False):
        if self.decided:
            return
        self.decided = True
        self.state = AttemptState.CLOSED
        self.detach()

    def reject(self, denial: PolicyDenialError):
        if self.decided:
            return
        self.decided = True
        self.denial = denial
        self.state = AttemptState.REJECTING
        self.detach()

        connection = self.connection
        if connection is None or connection.destroyed:
            self.state = AttemptState.REJECTED
            return
        try:
            connection.end(self._destroy_after_end)
        except OSError as exc:
            audit("TEARDOWN", f"{self.host}: end failed: {exc}", "WARNING")
            self._destroy_after_end()

    def _destroy_after_end(self):
        # Destroying before the half-close has run can surface a transport
        # error in place of the denial, hence end() first.
        connection = self.connection
        try:
            if not connection.destroyed:
                connection.destroy(self.denial)
        except OSError as exc:
            audit("TEARDOWN", f"{self.host}: destroy failed: {exc}", "WARNING")
        finally:
            self.state = AttemptState.REJECTED


class ConnectionGate:
    """Wraps a connection factory with address policy checks.

    ``inner`` is anything with ``create_connection(options, connect_listener)``
    returning a connection that emits ``lookup``/``ready``/``close`` and
    supports ``end``, ``destroy`` and ``destroyed``.
    """

    def __init__(self, config=None, inner=None):
        self.config = PolicyConfig.from_options(config)
        self.evaluator = PolicyEvaluator(self.config)
        self.inner = inner if inner is not None else SocketConnectionFactory()

    def create_connection(self, options: ConnectOptions, connect_listener=None):
        attempt = ConnectionAttempt(options.host, self.evaluator, family=options.family)
        attempt.preflight()
        connection = self.inner.create_connection(options, connect_listener)
        attempt.attach(connection)
        return connection

    def open(self, options: ConnectOptions):
        """Create and connect; returns the connected socket."""
        return self.create_connection(options).connect()
