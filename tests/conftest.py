import json
import struct
from collections import deque
import pytest


class FakeSocket:
    """In-memory :class:`wsrcon.SocketHandle` fed by the tests."""
    def __init__(self, address=("127.0.0.1", 50000)):
        self.address = address
        self.incoming = deque()
        self.sent = bytearray()
        self.close_count = 0
        self.eof = False
        self.read_error = None
        self.write_error = None
        self.write_limit = None

    @property
    def closed(self):
        return self.close_count > 0

    def feed(self, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.incoming.append(bytes(data))

    def is_readable(self):
        if self.closed:
            return False
        return bool(self.incoming) or self.eof or self.read_error is not None

    def read_nonblocking(self, size):
        if self.read_error is not None:
            raise self.read_error
        if self.incoming:
            chunk = self.incoming.popleft()
            if len(chunk) > size:
                self.incoming.appendleft(chunk[size:])
                chunk = chunk[:size]
            return chunk
        if self.eof:
            return b""
        return None

    def write_nonblocking(self, data):
        if self.write_error is not None:
            raise self.write_error
        if self.write_limit is not None:
            data = data[:self.write_limit]
        self.sent += data
        return len(data)

    def close(self):
        self.close_count += 1

    def peer_address(self):
        return self.address


class FakeListener:
    def __init__(self, port=8080):
        self.pending = deque()
        self.closed = False
        self._port = port

    @property
    def port(self):
        return self._port

    def is_readable(self):
        return not self.closed and bool(self.pending)

    def accept(self):
        if not self.pending:
            return None
        return self.pending.popleft()

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _handshake_request(key="dGhlIHNhbXBsZSBub25jZQ=="):
    return (
        "GET /console HTTP/1.1\r\n"
        "Host: localhost:19132\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Key: {key}\r\n"
        "Sec-WebSocket-Version: 13\r\n"
        "\r\n").encode("ascii")


def _client_frame(payload, opcode=0x1, mask=b"\x37\xfa\x21\x3d"):
    from wsrcon._frames import unmask

    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    header = bytes([0x80 | opcode])
    length = len(payload)
    if length <= 125:
        header += bytes([0x80 | length])
    elif length <= 65535:
        header += bytes([0x80 | 126]) + struct.pack("!H", length)
    else:
        header += bytes([0x80 | 127]) + struct.pack("!Q", length)
    return header + mask + unmask(payload, mask)


def _read_server_output(data):
    """Split the bytes written by the server into (handshake response, list of events)."""
    from wsrcon._frames import parse_frame

    data = bytes(data)
    response = b""
    if data.startswith(b"HTTP/1.1"):
        end = data.index(b"\r\n\r\n") + 4
        response, data = data[:end], data[end:]
    events = []
    while data:
        event, consumed = parse_frame(data)
        assert consumed > 0, "Incomplete frame written by the server"
        events.append(event)
        data = data[consumed:]
    return response, events


def _read_messages(sock, clear=True):
    """Decode the JSON text messages written to ``sock``."""
    from wsrcon._frames import TextMessage

    _, events = _read_server_output(sock.sent)
    if clear:
        sock.sent.clear()
    return [json.loads(e.text()) for e in events if isinstance(e, TextMessage)]


@pytest.fixture
def make_socket():
    return FakeSocket


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def listener():
    return FakeListener()


@pytest.fixture
def handshake_request():
    return _handshake_request


@pytest.fixture
def client_frame():
    return _client_frame


@pytest.fixture
def read_server_output():
    return _read_server_output


@pytest.fixture
def read_messages():
    return _read_messages


@pytest.fixture
def make_server(listener, clock):
    from wsrcon import ServerConfig, WebSocketServer

    servers = []

    def make(config=None, **kwargs):
        kwargs.setdefault("listener_factory", lambda host, port: listener)
        kwargs.setdefault("clock", clock)
        server = WebSocketServer(config or ServerConfig(), **kwargs)
        servers.append(server)
        assert server.start()
        return server

    yield make
    for server in servers:
        server.stop()


@pytest.fixture
def connect(listener, handshake_request, make_socket):
    """Open a connection to ``server`` and complete the opening handshake."""
    def _connect(server, address=("127.0.0.1", 50000)):
        sock = make_socket(address)
        listener.pending.append(sock)
        sock.feed(handshake_request())
        server.tick()
        assert sock.sent.startswith(b"HTTP/1.1 101 Switching Protocols\r\n")
        return sock
    return _connect
