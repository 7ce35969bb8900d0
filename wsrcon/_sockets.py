import errno
import logging
import selectors
import socket
from typing import Optional
from ._types import Address
from ._constants import LISTEN_BACKLOG


logger = logging.getLogger("wsrcon.sockets")

_WOULD_BLOCK = (errno.EAGAIN, errno.EWOULDBLOCK)


def _make_selector(sock: socket.socket) -> selectors.BaseSelector:
    # Not limited to descriptors below FD_SETSIZE, unlike select.select
    sel = selectors.DefaultSelector()
    sel.register(sock, selectors.EVENT_READ)
    return sel


class TCPSocketHandle:
    """
    Non-blocking TCP socket of a connected peer, see :class:`wsrcon.SocketHandle`.
    """
    def __init__(self, sock: socket.socket, address: Optional[Address] = None):
        sock.setblocking(False)
        self._sock = sock
        self._address = address
        self._closed = False
        self._selector = _make_selector(sock)

    @property
    def closed(self) -> bool:
        return self._closed

    def fileno(self) -> int:
        return self._sock.fileno()

    def is_readable(self) -> bool:
        if self._closed:
            return False
        return bool(self._selector.select(0))

    def read_nonblocking(self, size: int) -> Optional[bytes]:
        try:
            return self._sock.recv(size)
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as e:
            if e.errno in _WOULD_BLOCK:
                return None
            raise

    def write_nonblocking(self, data: bytes) -> int:
        view = memoryview(data)
        written = 0
        while written < len(view):
            try:
                written += self._sock.send(view[written:])
            except InterruptedError:
                continue
            except BlockingIOError:
                logger.debug(f"Socket send buffer full, sent {written} of {len(view)} bytes")
                break
        return written

    def peer_address(self) -> Address:
        if self._address is None:
            self._address = self._sock.getpeername()[:2]
        return self._address

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already disconnected
            pass
        self._selector.close()
        self._sock.close()


class ListeningSocket:
    """
    Non-blocking listening TCP socket.
    """
    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._closed = False
        self._selector = _make_selector(sock)

    @classmethod
    def open(cls, host: str, port: int, backlog: int = LISTEN_BACKLOG) -> "ListeningSocket":
        """
        Create, bind and listen. Raises ``OSError`` if any of the steps fails.
        """
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setblocking(False)
            sock.bind((host, port))
            sock.listen(backlog)
        except OSError:
            sock.close()
            raise
        logger.debug(f"Socket listening on {host}:{port} with backlog of {backlog}")
        return cls(sock)

    @property
    def port(self) -> int:
        return self._sock.getsockname()[1]

    @property
    def closed(self) -> bool:
        return self._closed

    def is_readable(self) -> bool:
        if self._closed:
            return False
        return bool(self._selector.select(0))

    def accept(self) -> Optional[TCPSocketHandle]:
        """
        Accept a pending connection. Returns ``None`` if no connection is pending.
        """
        try:
            sock, address = self._sock.accept()
        except (BlockingIOError, InterruptedError):
            return None
        try:
            return TCPSocketHandle(sock, address[:2])
        except OSError as e:
            logger.warning(f"Failed to set up accepted connection from {address[0]}: {e}")
            sock.close()
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._selector.close()
        self._sock.close()
