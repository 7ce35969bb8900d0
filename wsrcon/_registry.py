import itertools
import logging
from enum import Enum
from time import time
from dataclasses import dataclass, field
from typing import Dict, Optional, List, Callable, Iterator
from ._types import SocketHandle
from ._constants import (
    DEFAULT_MAX_CONNECTIONS,
    MAX_BUFFER_SIZE,
    CONNECTION_TIMEOUT,
    MAX_AUTH_ATTEMPTS,
    AUTH_LOCKOUT_TIME,
)


logger = logging.getLogger("wsrcon.registry")

UNKNOWN_PEER = "unknown:0"


class ConnectionState(Enum):
    #: Not registered yet. The registry creates records in HANDSHAKE_PENDING.
    CONNECTING = 0
    #: Waiting for the HTTP upgrade request.
    HANDSHAKE_PENDING = 1
    #: The opening handshake is complete, frames are exchanged.
    STREAMING = 2
    #: The connection was removed and its socket closed.
    CLOSED = 3


@dataclass
class Connection:
    id: int
    socket: SocketHandle
    peer: str
    state: ConnectionState = ConnectionState.CONNECTING
    authenticated: bool = False
    buffer: bytearray = field(default_factory=bytearray)
    connected_at: float = 0.0
    last_activity: float = 0.0

    @property
    def handshake_done(self) -> bool:
        return self.state is ConnectionState.STREAMING

    @property
    def ip(self) -> str:
        """
        Key of the authentication throttle. Peers without a known address are
        throttled per connection.
        """
        host, _, _ = self.peer.rpartition(":")
        if not host or self.peer == UNKNOWN_PEER:
            return f"unknown#{self.id}"
        return host


@dataclass
class AuthAttemptRecord:
    count: int = 0
    lockout_until: float = 0


def _format_peer(socket: SocketHandle) -> str:
    try:
        host, port = socket.peer_address()[:2]
    except OSError:
        return UNKNOWN_PEER
    return f"{host}:{port}"


class ConnectionRegistry:
    """
    Owns every live connection together with its buffer and timestamps, and the
    per-IP authentication attempt records. The registry performs no I/O except
    closing the socket of a removed connection.

    All time-dependent methods accept the current time as ``now``.
    If it is omitted, ``clock()`` is used.
    """

    def __init__(self,
                 max_connections: int = DEFAULT_MAX_CONNECTIONS,
                 *,
                 password_required: bool = False,
                 max_buffer_size: int = MAX_BUFFER_SIZE,
                 clock: Callable[[], float] = time):
        self.max_connections = max_connections
        self.password_required = password_required
        self.max_buffer_size = max_buffer_size
        self._clock = clock
        self._connections: Dict[int, Connection] = {}
        self._auth_attempts: Dict[str, AuthAttemptRecord] = {}
        self._ids = itertools.count(1)

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: int) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: int) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def ids(self) -> List[int]:
        return list(self._connections.keys())

    def connections(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def can_accept(self) -> bool:
        return len(self._connections) < self.max_connections

    def register(self, socket: SocketHandle, now: Optional[float] = None) -> int:
        now = self._now(now)
        connection = Connection(
            id=next(self._ids),
            socket=socket,
            peer=_format_peer(socket),
            state=ConnectionState.HANDSHAKE_PENDING,
            authenticated=not self.password_required,
            connected_at=now,
            last_activity=now,
        )
        self._connections[connection.id] = connection
        logger.info(f"WebSocket client connected from: {connection.peer} (ID: {connection.id})")
        return connection.id

    def remove(self, connection_id: int) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        connection.state = ConnectionState.CLOSED
        try:
            connection.socket.close()
        except OSError:
            # The handle was already closed
            pass
        logger.debug(f"Connection {connection_id} removed")

    def close_all(self) -> None:
        for connection_id in self.ids():
            self.remove(connection_id)

    def touch(self, connection_id: int, now: Optional[float] = None) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.last_activity = self._now(now)

    def append_to_buffer(self, connection_id: int, data: bytes, now: Optional[float] = None) -> bool:
        """
        Append ``data`` to the connection's buffer. Returns ``False`` (and leaves the buffer
        untouched) if the buffer would exceed the size limit; the caller must remove the connection.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        new_size = len(connection.buffer) + len(data)
        if new_size > self.max_buffer_size:
            logger.debug(f"Buffer overflow attempt from connection: {connection_id} (size: {new_size} bytes)")
            return False
        connection.buffer += data
        connection.last_activity = self._now(now)
        return True

    def get_buffer(self, connection_id: int) -> bytes:
        connection = self._connections.get(connection_id)
        if connection is None:
            return b""
        return bytes(connection.buffer)

    def consume(self, connection_id: int, nbytes: int) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            del connection.buffer[:nbytes]

    def clear_buffer(self, connection_id: int) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.buffer.clear()

    def mark_handshake_done(self, connection_id: int) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        if connection.state is not ConnectionState.HANDSHAKE_PENDING:
            raise RuntimeError(f"Connection {connection_id} is in state {connection.state.name}, expected HANDSHAKE_PENDING")
        connection.state = ConnectionState.STREAMING
        connection.buffer.clear()

    def is_handshake_done(self, connection_id: int) -> bool:
        connection = self._connections.get(connection_id)
        return connection is not None and connection.handshake_done

    def is_authenticated(self, connection_id: int) -> bool:
        connection = self._connections.get(connection_id)
        return connection is not None and connection.authenticated

    def set_authenticated(self, connection_id: int, authenticated: bool = True) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        if not authenticated and connection.authenticated:
            # Authentication is never revoked on a live connection
            logger.debug(f"Ignoring request to de-authenticate connection {connection_id}")
            return
        connection.authenticated = authenticated

    def ready_for_broadcast(self) -> List[Connection]:
        return [c for c in self._connections.values() if c.handshake_done and c.authenticated]

    def sweep_idle(self, now: Optional[float] = None, timeout: float = CONNECTION_TIMEOUT) -> List[int]:
        now = self._now(now)
        removed = []
        for connection in list(self._connections.values()):
            if now - connection.last_activity >= timeout:
                logger.debug(f"Cleaning up inactive connection: {connection.id}")
                self.remove(connection.id)
                removed.append(connection.id)
        return removed

    def auth_attempts(self, ip: str) -> Optional[AuthAttemptRecord]:
        return self._auth_attempts.get(ip)

    def can_attempt_auth(self, ip: str, now: Optional[float] = None) -> bool:
        record = self._auth_attempts.get(ip)
        if record is None:
            return True
        now = self._now(now)
        if now < record.lockout_until:
            logger.debug(f"IP {ip} is locked out for {record.lockout_until - now:.0f} more seconds")
            return False
        if record.lockout_until > 0:
            # Lockout expired
            del self._auth_attempts[ip]
        return True

    def record_auth_attempt(self, ip: str, success: bool, now: Optional[float] = None) -> None:
        if success:
            self._auth_attempts.pop(ip, None)
            return

        record = self._auth_attempts.setdefault(ip, AuthAttemptRecord())
        record.count += 1
        logger.debug(f"Failed auth attempt #{record.count} from IP: {ip}")
        if record.count == MAX_AUTH_ATTEMPTS:
            record.lockout_until = self._now(now) + AUTH_LOCKOUT_TIME
            logger.warning(f"IP {ip} locked out for {AUTH_LOCKOUT_TIME} seconds due to too many failed auth attempts")

    def sweep_auth_attempts(self, now: Optional[float] = None) -> None:
        now = self._now(now)
        for ip, record in list(self._auth_attempts.items()):
            if record.lockout_until > 0 and now >= record.lockout_until:
                del self._auth_attempts[ip]
