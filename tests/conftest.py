import socket
import sys
import threading
import time
from pathlib import Path
from types import SimpleNamespace

import paramiko
import pytest
from botocore.exceptions import ClientError


# ============================================================
# Socket helpers
# ============================================================

def recv_exactly(sock, size, timeout=10.0):
    """Read exactly ``size`` bytes or fail the test"""
    sock.settimeout(timeout)
    chunks = []
    remaining = size
    while remaining:
        data = sock.recv(min(remaining, 65536))
        if not data:
            raise AssertionError(f"stream ended with {remaining} bytes outstanding")
        chunks.append(data)
        remaining -= len(data)
    return b"".join(chunks)


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def _pump(src, dst, on_done):
    try:
        while True:
            data = src.recv(65536)
            if not data:
                break
            dst.sendall(data)
    except (OSError, EOFError):
        pass
    finally:
        on_done()


# ============================================================
# Echo service standing in for the database
# ============================================================

class EchoServer:
    def __init__(self):
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(16)
        self.port = self._sock.getsockname()[1]
        self.connections = 0
        self._closed = False
        threading.Thread(target=self._serve, daemon=True).start()

    @property
    def address(self):
        return ("127.0.0.1", self.port)

    def _serve(self):
        while not self._closed:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            self.connections += 1
            threading.Thread(target=self._echo, args=(conn,), daemon=True).start()

    def _echo(self, conn):
        with conn:
            try:
                while True:
                    data = conn.recv(65536)
                    if not data:
                        break
                    conn.sendall(data)
            except OSError:
                pass

    def close(self):
        self._closed = True
        self._sock.close()


# ============================================================
# Minimal SSH server acting as bastion
# ============================================================

class _BastionInterface(paramiko.ServerInterface):
    def __init__(self, server):
        self.server = server
        self.pending = {}

    def get_allowed_auths(self, username):
        return "publickey"

    def check_auth_publickey(self, username, key):
        if username == self.server.user and key.asbytes() == self.server.client_key.asbytes():
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_channel_request(self, kind, chanid):
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_direct_tcpip_request(self, chanid, origin, destination):
        self.server.destinations.append(tuple(destination))
        if destination[1] in self.server.refuse_ports:
            return paramiko.OPEN_FAILED_CONNECT_FAILED
        self.pending[chanid] = tuple(destination)
        return paramiko.OPEN_SUCCEEDED


class SSHTestServer:
    """Accepts public key logins and relays direct-tcpip channels"""

    def __init__(self, user, client_key, host_key=None, refuse_ports=()):
        self.user = user
        self.client_key = client_key
        self.host_key = host_key or paramiko.ECDSAKey.generate()
        self.refuse_ports = set(refuse_ports)
        self.destinations = []
        self.transports = []
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(16)
        self.port = self._sock.getsockname()[1]
        self._closed = False
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        while not self._closed:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            threading.Thread(target=self._session, args=(conn,), daemon=True).start()

    def _session(self, conn):
        transport = paramiko.Transport(conn)
        transport.add_server_key(self.host_key)
        iface = _BastionInterface(self)
        try:
            transport.start_server(server=iface)
        except (paramiko.SSHException, EOFError, OSError):
            return
        self.transports.append(transport)
        while transport.is_active() and not self._closed:
            chan = transport.accept(timeout=0.2)
            if chan is None:
                continue
            destination = iface.pending.pop(chan.get_id())
            threading.Thread(target=self._relay, args=(chan, destination), daemon=True).start()

    def _relay(self, chan, destination):
        try:
            upstream = socket.create_connection(destination, timeout=5)
        except OSError:
            chan.close()
            return
        upstream.settimeout(None)
        done = threading.Event()

        def finish():
            if done.is_set():
                return
            done.set()
            chan.close()
            try:
                upstream.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            upstream.close()

        threading.Thread(target=_pump, args=(chan, upstream, finish), daemon=True).start()
        threading.Thread(target=_pump, args=(upstream, chan, finish), daemon=True).start()

    def close(self):
        self._closed = True
        self._sock.close()
        for transport in self.transports:
            transport.close()


# ============================================================
# Fake SSM client
# ============================================================

class FakeSSM:
    """Records Session Manager calls; optionally fails them"""

    def __init__(self, start_error=None, terminate_error=None, session_id="sess-0123"):
        self.start_error = start_error
        self.terminate_error = terminate_error
        self.session_id = session_id
        self.started = []
        self.terminated = []
        self.meta = SimpleNamespace(
            endpoint_url="https://ssm.ap-northeast-1.amazonaws.com",
            region_name="ap-northeast-1",
        )

    def start_session(self, **request):
        self.started.append(request)
        if self.start_error is not None:
            raise self.start_error
        return {
            "SessionId": self.session_id,
            "TokenValue": "token-abc",
            "StreamUrl": f"wss://ssmmessages.example/v1/data-channel/{self.session_id}",
            "ResponseMetadata": {"HTTPStatusCode": 200},
        }

    def terminate_session(self, SessionId):
        self.terminated.append(SessionId)
        if self.terminate_error is not None:
            raise self.terminate_error
        return {"SessionId": SessionId}


def client_error(code="TargetNotConnected", operation="StartSession"):
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised"}}, operation)


# Fake session-manager-plugin: argv[1] is a file recording the real arguments
RECORD_ARGS_PLUGIN = (
    "import json, sys\n"
    "with open(sys.argv[1], 'w') as f:\n"
    "    json.dump(sys.argv[2:], f)\n"
)

# Fake session-manager-plugin bridging stdin/stdout to a TCP port (argv[1])
BRIDGE_PLUGIN = (
    "import os, socket, sys, threading\n"
    "sock = socket.create_connection(('127.0.0.1', int(sys.argv[1])))\n"
    "def up():\n"
    "    while True:\n"
    "        data = os.read(0, 65536)\n"
    "        if not data:\n"
    "            break\n"
    "        sock.sendall(data)\n"
    "    sock.shutdown(socket.SHUT_WR)\n"
    "threading.Thread(target=up, daemon=True).start()\n"
    "while True:\n"
    "    data = sock.recv(65536)\n"
    "    if not data:\n"
    "        break\n"
    "    os.write(1, data)\n"
)

# Fake session-manager-plugin that only waits to be killed
IDLE_PLUGIN = "import time\ntime.sleep(120)\n"

# Fake session-manager-plugin echoing stdin back on stdout
ECHO_PLUGIN = (
    "import os\n"
    "while True:\n"
    "    data = os.read(0, 65536)\n"
    "    if not data:\n"
    "        break\n"
    "    os.write(1, data)\n"
)


def python_plugin(script, *args):
    return [sys.executable, "-c", script, *[str(a) for a in args]]


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def client_key():
    return paramiko.ECDSAKey.generate()


@pytest.fixture
def client_key_file(tmp_path, client_key):
    path = tmp_path / "id_ecdsa"
    client_key.write_private_key_file(str(path))
    return path


@pytest.fixture
def echo_server():
    server = EchoServer()
    yield server
    server.close()


@pytest.fixture
def ssh_server(client_key):
    server = SSHTestServer("dbuser", client_key)
    yield server
    server.close()


@pytest.fixture
def unused_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def key_file(tmp_path) -> Path:
    """An existing file standing in for a private key during resolution"""
    path = tmp_path / "id_rsa"
    path.write_text("not a real key\n")
    return path
