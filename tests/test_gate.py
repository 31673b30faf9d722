import os
import socket
import sys
import unittest
from unittest.mock import MagicMock


sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from request_filtering.errors import DenialReason, PolicyDenialError
from request_filtering.gate import AttemptState, ConnectionAttempt, ConnectionGate
from request_filtering.policy import PolicyConfig, PolicyEvaluator
from request_filtering.transport import ConnectOptions, SocketConnectionFactory


class FakeConnection:
    """Records teardown calls; ``end`` can be held back to simulate a slow half-close."""

    def __init__(self, defer_end=False):
        self.listeners = {}
        self.calls = []
        self.destroyed = False
        self.destroy_errors = []
        self.defer_end = defer_end
        self.pending_end = None

    def add_listener(self, event, listener):
        self.listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event, listener):
        if listener in self.listeners.get(event, []):
            self.listeners[event].remove(listener)

    def emit(self, event, *args):
        for listener in list(self.listeners.get(event, [])):
            listener(*args)

    def end(self, callback=None):
        self.calls.append("end")
        if self.defer_end:
            self.pending_end = callback
        elif callback is not None:
            callback()

    def destroy(self, error=None):
        self.calls.append("destroy")
        self.destroy_errors.append(error)
        self.destroyed = True
        self.emit("close", error is not None)


class FakeFactory:
    def __init__(self, connection=None):
        self.connection = connection or FakeConnection()
        self.created = []

    def create_connection(self, options, connect_listener=None):
        self.created.append(options)
        return self.connection


class PreflightTests(unittest.TestCase):
    def test_literal_denial_never_reaches_factory(self):
        factory = FakeFactory()
        gate = ConnectionGate(inner=factory)

        with self.assertRaises(PolicyDenialError) as ctx:
            gate.create_connection(ConnectOptions("127.0.0.1", 80))

        self.assertEqual(factory.created, [])
        self.assertEqual(ctx.exception.reason, DenialReason.PRIVATE)
        self.assertEqual(
            str(ctx.exception),
            "DNS lookup 127.0.0.1(family:4, host:127.0.0.1) is not allowed. "
            "Because, It is private IP address.",
        )

    def test_literal_ipv6_family(self):
        gate = ConnectionGate(inner=FakeFactory())
        with self.assertRaises(PolicyDenialError) as ctx:
            gate.create_connection(ConnectOptions("::1", 80, family=4))
        self.assertEqual(ctx.exception.family, 6)

    def test_meta_literal(self):
        gate = ConnectionGate(inner=FakeFactory())
        with self.assertRaises(PolicyDenialError) as ctx:
            gate.create_connection(ConnectOptions("0.0.0.0", 80))
        self.assertEqual(ctx.exception.reason, DenialReason.META)

    def test_admitted_literal_attaches_listeners(self):
        factory = FakeFactory()
        gate = ConnectionGate(inner=factory)

        connection = gate.create_connection(ConnectOptions("8.8.8.8", 443))

        self.assertIs(connection, factory.connection)
        self.assertEqual(len(connection.listeners["lookup"]), 1)

    def test_allow_list_admits_literal(self):
        factory = FakeFactory()
        gate = ConnectionGate({"allowIPAddressList": ["127.0.0.1"]}, inner=factory)
        gate.create_connection(ConnectOptions("127.0.0.1", 8080))
        self.assertEqual(len(factory.created), 1)

    def test_port_scan_guard(self):
        factory = FakeFactory()
        gate = ConnectionGate(
            {"allowPrivateIPAddress": True, "stopPortScanningByUrlRedirection": True},
            inner=factory,
        )
        with self.assertRaises(PolicyDenialError) as ctx:
            gate.create_connection(ConnectOptions("127.0.0.1", 1))
        self.assertEqual(ctx.exception.reason, DenialReason.PRIVATE)
        self.assertEqual(factory.created, [])

    def test_malformed_allow_entry_reported_once_per_connection(self):
        for options, host in (
            ({"stopPortScanningByUrlRedirection": True}, "8.8.8.8"),
            ({"stopPortScanningByUrlRedirection": True, "allowPrivateIPAddress": True}, "127.0.0.1"),
            ({}, "10.0.0.1"),
        ):
            with self.subTest(host=host):
                gate = ConnectionGate(
                    dict(options, allowIPAddressList=["127.0.0.0/invalid"]),
                    inner=FakeFactory(),
                )
                with self.assertLogs("RequestFiltering", level="WARNING") as logs:
                    try:
                        gate.create_connection(ConnectOptions(host, 80))
                    except PolicyDenialError:
                        pass
                warnings = [r for r in logs.records if "Invalid CIDR" in r.getMessage()]
                self.assertEqual(len(warnings), 1)

    def test_port_scan_guard_ignores_names(self):
        factory = FakeFactory()
        gate = ConnectionGate(
            {"allowPrivateIPAddress": True, "stopPortScanningByUrlRedirection": True},
            inner=factory,
        )
        gate.create_connection(ConnectOptions("localhost", 1))
        self.assertEqual(len(factory.created), 1)


class LookupTests(unittest.TestCase):
    def setUp(self):
        self.connection = FakeConnection()
        self.gate = ConnectionGate(inner=FakeFactory(self.connection))
        self.gate.create_connection(ConnectOptions("rebind.test", 80))

    def test_denied_lookup_ends_then_destroys(self):
        self.connection.emit("lookup", None, "127.0.0.1", 4, "rebind.test")

        self.assertEqual(self.connection.calls, ["end", "destroy"])
        error = self.connection.destroy_errors[0]
        self.assertIsInstance(error, PolicyDenialError)
        self.assertEqual(
            str(error),
            "DNS lookup 127.0.0.1(family:4, host:rebind.test) is not allowed. "
            "Because, It is private IP address.",
        )

    def test_second_denied_lookup_is_ignored(self):
        self.connection.emit("lookup", None, "127.0.0.1", 4, "rebind.test")
        self.connection.emit("lookup", None, "169.254.169.254", 4, "rebind.test")

        self.assertEqual(self.connection.calls.count("destroy"), 1)
        self.assertEqual(self.connection.destroy_errors[0].address, "127.0.0.1")

    def test_listeners_detached_after_rejection(self):
        self.connection.emit("lookup", None, "10.0.0.1", 4, "rebind.test")
        self.assertEqual(self.connection.listeners["lookup"], [])
        self.assertEqual(self.connection.listeners["ready"], [])

    def test_admitted_lookup_keeps_connection(self):
        self.connection.emit("lookup", None, "8.8.8.8", 4, "rebind.test")
        self.assertEqual(self.connection.calls, [])

    def test_lookup_error_is_left_to_transport(self):
        self.connection.emit("lookup", socket.gaierror("nope"), None, None, "rebind.test")
        self.assertEqual(self.connection.calls, [])

    def test_ready_detaches(self):
        self.connection.emit("ready")
        self.assertEqual(self.connection.listeners["lookup"], [])
        self.connection.emit("lookup", None, "127.0.0.1", 4, "rebind.test")
        self.assertEqual(self.connection.calls, [])

    def test_close_detaches(self):
        self.connection.emit("close", False)
        self.assertEqual(self.connection.listeners["close"], [])


class TeardownTests(unittest.TestCase):
    def _attempt(self, connection):
        attempt = ConnectionAttempt("rebind.test", PolicyEvaluator(PolicyConfig()))
        attempt.attach(connection)
        return attempt

    def test_lookups_during_pending_end_destroy_once(self):
        connection = FakeConnection(defer_end=True)
        attempt = self._attempt(connection)

        attempt.on_lookup(None, "127.0.0.1", 4, "rebind.test")
        attempt.on_lookup(None, "::1", 6, "rebind.test")
        self.assertEqual(connection.calls, ["end"])
        self.assertEqual(attempt.state, AttemptState.REJECTING)

        connection.pending_end()
        self.assertEqual(connection.calls, ["end", "destroy"])
        self.assertEqual(attempt.state, AttemptState.REJECTED)

    def test_destroyed_before_end_completes(self):
        connection = FakeConnection(defer_end=True)
        attempt = self._attempt(connection)

        attempt.on_lookup(None, "127.0.0.1", 4, "rebind.test")
        connection.destroy(None)
        connection.pending_end()

        self.assertEqual(connection.calls, ["end", "destroy"])
        self.assertEqual(attempt.state, AttemptState.REJECTED)

    def test_already_destroyed_connection_is_not_torn_down(self):
        connection = FakeConnection()
        connection.destroyed = True
        attempt = self._attempt(connection)

        attempt.reject(PolicyDenialError(DenialReason.PRIVATE, "127.0.0.1", "rebind.test", 4))

        self.assertEqual(connection.calls, [])
        self.assertEqual(attempt.state, AttemptState.REJECTED)

    def test_destroy_failure_is_contained(self):
        connection = FakeConnection()
        connection.destroy = MagicMock(side_effect=OSError("already reset"))
        attempt = self._attempt(connection)

        with self.assertLogs("RequestFiltering", level="WARNING") as logs:
            attempt.on_lookup(None, "127.0.0.1", 4, "rebind.test")

        connection.destroy.assert_called_once()
        self.assertEqual(attempt.state, AttemptState.REJECTED)
        self.assertTrue(any("TEARDOWN" in line for line in logs.output))

    def test_end_failure_still_destroys(self):
        connection = FakeConnection()
        connection.end = MagicMock(side_effect=OSError("broken pipe"))
        attempt = self._attempt(connection)

        attempt.on_lookup(None, "127.0.0.1", 4, "rebind.test")

        self.assertEqual(connection.calls, ["destroy"])
        self.assertEqual(attempt.state, AttemptState.REJECTED)


class SocketGateTests(unittest.TestCase):
    def setUp(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(4)
        self.server.settimeout(0.2)
        self.port = self.server.getsockname()[1]

    def tearDown(self):
        self.server.close()

    def _assert_no_connection(self):
        with self.assertRaises(socket.timeout):
            conn, _ = self.server.accept()
            conn.close()

    def test_rebinding_name_is_denied_before_connecting(self):
        def resolver(host, port, family=0, type=0, proto=0, flags=0):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", port))]

        gate = ConnectionGate(inner=SocketConnectionFactory(resolver=resolver))

        with self.assertRaises(PolicyDenialError) as ctx:
            gate.open(ConnectOptions("rebind.test", self.port, timeout=2))

        self.assertEqual(
            str(ctx.exception),
            "DNS lookup 127.0.0.1(family:4, host:rebind.test) is not allowed. "
            "Because, It is private IP address.",
        )
        self._assert_no_connection()

    def test_allow_listed_name_connects(self):
        def resolver(host, port, family=0, type=0, proto=0, flags=0):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", port))]

        gate = ConnectionGate(
            {"allowIPAddressList": ["127.0.0.1"]},
            inner=SocketConnectionFactory(resolver=resolver),
        )
        sock = gate.open(ConnectOptions("allowed.test", self.port, timeout=2))
        try:
            self.assertEqual(sock.getpeername()[1], self.port)
        finally:
            sock.close()

    def test_non_canonical_literals_are_caught_after_resolution(self):
        for host in ("017700000001", "0x7f000001"):
            with self.subTest(host=host):
                try:
                    socket.getaddrinfo(host, self.port, socket.AF_INET, socket.SOCK_STREAM)
                except socket.gaierror:
                    self.skipTest(f"resolver does not parse {host}")

                with self.assertRaises(PolicyDenialError) as ctx:
                    ConnectionGate().open(ConnectOptions(host, self.port, timeout=2))
                self.assertEqual(ctx.exception.address, "127.0.0.1")
                self.assertEqual(ctx.exception.host, host)
        self._assert_no_connection()


if __name__ == "__main__":
    unittest.main()
