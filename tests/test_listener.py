"""
Tests for the local port forward listener
"""
import errno
import os
import socket
import threading

import pytest

from dbtunnel.core.exceptions import DialError
from dbtunnel.domain.tunnel import Endpoint, PortForwardListener

from conftest import recv_exactly, wait_for

DB = Endpoint("db.internal", 3306)


def tcp_opener(address):
    """Opener dialing ``address`` directly, standing in for a remote channel"""
    def opener(endpoint):
        return socket.create_connection(address, timeout=5)
    return opener


@pytest.fixture
def make_listener():
    listeners = []

    def factory(opener, **kwargs):
        listener = PortForwardListener("127.0.0.1", 0, opener, DB, **kwargs)
        listeners.append(listener)
        return listener

    yield factory
    for listener in listeners:
        listener.close()


def connect(listener):
    return socket.create_connection(("127.0.0.1", listener.port), timeout=5)


def exchange(sock, payload):
    """Send ``payload`` while reading its echo; returns the echoed bytes"""
    sender = threading.Thread(target=sock.sendall, args=(payload,))
    sender.start()
    received = recv_exactly(sock, len(payload), timeout=30)
    sender.join()
    return received


class TestForwarding:
    """Test byte-exact forwarding to the far side"""

    @pytest.mark.parametrize("size", [64 * 1024, 10 * 1024 * 1024])
    def test_echo_is_byte_exact(self, make_listener, echo_server, size):
        listener = make_listener(tcp_opener(echo_server.address))
        listener.start()

        payload = os.urandom(size)
        with connect(listener) as client:
            assert exchange(client, payload) == payload

    def test_concurrent_connections_are_independent(self, make_listener, echo_server):
        listener = make_listener(tcp_opener(echo_server.address))
        listener.start()

        payloads = [os.urandom(256 * 1024), os.urandom(256 * 1024)]
        results = [None, None]

        def run(index):
            with connect(listener) as client:
                results[index] = exchange(client, payloads[index])

        threads = [threading.Thread(target=run, args=(i,)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert results == payloads
        assert echo_server.connections == 2

    def test_port_zero_reports_bound_port(self, make_listener, echo_server):
        listener = make_listener(tcp_opener(echo_server.address))
        listener.start()
        assert listener.port != 0
        assert listener.is_running()

    def test_start_twice(self, make_listener, echo_server):
        listener = make_listener(tcp_opener(echo_server.address))
        listener.start()
        with pytest.raises(RuntimeError):
            listener.start()


class TestEndOfStream:
    """Test end-of-stream propagation in both directions"""

    def _socketpair_listener(self, make_listener):
        remotes = []

        def opener(endpoint):
            near, far = socket.socketpair()
            remotes.append(far)
            return near

        listener = make_listener(opener)
        listener.start()
        return listener, remotes

    def test_client_close_reaches_remote(self, make_listener):
        listener, remotes = self._socketpair_listener(make_listener)
        client = connect(listener)
        client.sendall(b"ping")
        assert wait_for(lambda: remotes)
        remote = remotes[0]
        assert recv_exactly(remote, 4) == b"ping"

        client.close()

        remote.settimeout(5)
        assert remote.recv(1024) == b""
        remote.close()

    def test_remote_close_reaches_client(self, make_listener):
        listener, remotes = self._socketpair_listener(make_listener)
        client = connect(listener)
        assert wait_for(lambda: remotes)
        remote = remotes[0]
        remote.sendall(b"pong")
        assert recv_exactly(client, 4) == b"pong"

        remote.close()

        client.settimeout(5)
        assert client.recv(1024) == b""
        client.close()


class TestAcceptLoop:
    """Test accept error handling and shutdown"""

    def test_timeouts_are_retried(self, make_listener, echo_server):
        listener = make_listener(tcp_opener(echo_server.address))
        real_accept = listener._accept
        timeouts = []

        def flaky_accept():
            if len(timeouts) < 3:
                timeouts.append(1)
                raise socket.timeout("timed out")
            return real_accept()

        listener._accept = flaky_accept
        listener.start()

        with connect(listener) as client:
            assert exchange(client, b"still here") == b"still here"
        assert len(timeouts) == 3

    def test_other_accept_error_stops_loop(self, make_listener, echo_server):
        listener = make_listener(tcp_opener(echo_server.address))
        calls = []

        def failing_accept():
            calls.append(1)
            if len(calls) < 3:
                raise socket.timeout("timed out")
            raise OSError(errno.EMFILE, "Too many open files")

        listener._accept = failing_accept
        listener.start()
        port = listener.port

        listener._thread.join(timeout=5)
        assert not listener._thread.is_alive()
        assert len(calls) == 3
        assert not listener.is_running()
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", port), timeout=2)

    def test_opener_failure_drops_only_that_connection(self, make_listener, echo_server):
        dial = tcp_opener(echo_server.address)
        attempts = []

        def opener(endpoint):
            attempts.append(endpoint)
            if len(attempts) == 1:
                raise DialError("administratively prohibited")
            return dial(endpoint)

        listener = make_listener(opener)
        listener.start()

        with connect(listener) as first:
            first.settimeout(5)
            assert first.recv(1024) == b""

        with connect(listener) as second:
            assert exchange(second, b"hello") == b"hello"
        assert attempts == [DB, DB]

    def test_slow_open_does_not_delay_other_connections(self, make_listener, echo_server):
        dial = tcp_opener(echo_server.address)
        release = threading.Event()
        attempts = []

        def opener(endpoint):
            attempts.append(endpoint)
            if len(attempts) == 1:
                release.wait(timeout=30)
            return dial(endpoint)

        listener = make_listener(opener)
        listener.start()

        stalled = connect(listener)
        try:
            assert wait_for(lambda: len(attempts) == 1)
            with connect(listener) as second:
                second.sendall(b"ping")
                assert recv_exactly(second, 4, timeout=5) == b"ping"
            assert len(attempts) == 2

            release.set()
            assert exchange(stalled, b"late") == b"late"
        finally:
            release.set()
            stalled.close()

    def test_unexpected_opener_exception_is_contained(self, make_listener, echo_server):
        dial = tcp_opener(echo_server.address)
        attempts = []

        def opener(endpoint):
            attempts.append(endpoint)
            if len(attempts) == 1:
                raise RuntimeError("boom")
            return dial(endpoint)

        listener = make_listener(opener)
        listener.start()

        with connect(listener) as first:
            first.settimeout(5)
            assert first.recv(1024) == b""
        with connect(listener) as second:
            assert exchange(second, b"ok") == b"ok"

    def test_stop_event_ends_loop(self, make_listener, echo_server):
        stop = threading.Event()
        listener = make_listener(tcp_opener(echo_server.address), stop_event=stop)
        listener.start()

        stop.set()

        listener._thread.join(timeout=5)
        assert not listener._thread.is_alive()
        assert not listener.is_running()

    def test_close_is_idempotent(self, make_listener, echo_server):
        listener = make_listener(tcp_opener(echo_server.address))
        listener.start()
        port = listener.port

        listener.close()
        listener.close()

        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", port), timeout=2)

    def test_bind_conflict(self, make_listener, echo_server):
        first = make_listener(tcp_opener(echo_server.address))
        first.start()
        second = PortForwardListener("127.0.0.1", first.port, tcp_opener(echo_server.address), DB)
        with pytest.raises(OSError):
            second.start()
