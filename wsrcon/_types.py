from typing import Optional, Tuple, Callable
from typing import Protocol, TypedDict, runtime_checkable


Address = Tuple[str, int]
Task = Callable[[], None]
Scheduler = Callable[[Task], None]


@runtime_checkable
class SocketHandle(Protocol):
    """
    Non-blocking I/O handle of a single peer. The server never blocks on a handle:
    every read is preceded by ``is_readable()`` which polls with a zero timeout.
    """

    def read_nonblocking(self, size: int) -> Optional[bytes]:
        """
        Read at most ``size`` bytes. Returns ``None`` if no data is available right now
        (would block) and ``b""`` when the peer has closed the connection.
        Raises ``OSError`` on genuine socket errors.
        """
        ...

    def write_nonblocking(self, data: bytes) -> int:
        """
        Write as much of ``data`` as the socket accepts without blocking and return the number
        of bytes written. Raises ``OSError`` on genuine socket errors.
        """
        ...

    def close(self) -> None:
        ...

    def peer_address(self) -> Address:
        ...

    def is_readable(self) -> bool:
        ...


class ReplySink(Protocol):
    def send_message(self, message: str) -> None:
        ...


class CommandExecutor(Protocol):
    def dispatch(self, command: str, sink: ReplySink) -> bool:
        """
        Execute a console command. Output is written to ``sink``.
        Returns ``False`` if the command is not known.
        """
        ...


class ServerStatus(TypedDict):
    name: str
    version: str
    online_players: int
    max_players: int


StatusProvider = Callable[[], ServerStatus]
