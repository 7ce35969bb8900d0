import logging
import time
from collections import deque
from typing import Callable, Deque, Optional
from ._types import CommandExecutor, StatusProvider, Task
from ._config import ServerConfig
from ._constants import DEFAULT_SERVER_PORT, READ_CHUNK_SIZE, CONNECTION_TIMEOUT
from ._frames import (
    CloseConnection,
    CloseReason,
    Ping,
    TextMessage,
    encode_close,
    encode_frame,
    encode_pong,
    parse_frame,
)
from ._handshake import HEADER_TERMINATOR, perform_handshake
from ._messages import MessageHandler, encode_console_message
from ._registry import ConnectionRegistry
from ._sockets import ListeningSocket


logger = logging.getLogger("wsrcon.server")


class WebSocketServer:
    """
    WebSocket console server driven by the host application.

    The server never blocks and owns no thread or event loop. After :meth:`start`, the host
    calls :meth:`tick` at a fixed interval. Each tick accepts at most one new connection,
    reads pending data from every connection, performs handshakes, decodes frames, dispatches
    messages, and evicts idle connections. Commands are executed through :meth:`schedule`,
    i.e. at the beginning of the following tick.

    Example:
        ::

            server = WebSocketServer(ServerConfig(port=8080, password="secret"), executor=executor)
            if server.start():
                try:
                    while server.is_running:
                        server.tick()
                        time.sleep(0.05)
                finally:
                    server.stop()
    """
    def __init__(self,
                 config: Optional[ServerConfig] = None,
                 *,
                 executor: Optional[CommandExecutor] = None,
                 status_provider: Optional[StatusProvider] = None,
                 host_port: int = DEFAULT_SERVER_PORT,
                 clock: Callable[[], float] = time.time,
                 listener_factory: Callable[[str, int], ListeningSocket] = ListeningSocket.open,
                 idle_timeout: float = CONNECTION_TIMEOUT):
        self.config = config if config is not None else ServerConfig()
        self.host_port = host_port
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._listener_factory = listener_factory
        self._listener: Optional[ListeningSocket] = None
        self._pending_tasks: Deque[Task] = deque()

        self.registry = ConnectionRegistry(
            self.config.max_connections,
            password_required=self.config.password_required,
            clock=clock)
        self.message_handler = MessageHandler(
            self.registry,
            self.config,
            send=self.send_text,
            broadcast=self.broadcast,
            scheduler=self.schedule,
            executor=executor,
            status_provider=status_provider,
            clock=clock)

    def __enter__(self):
        if not self.start():
            raise RuntimeError("Failed to start the WebSocket server")
        return self

    def __exit__(self, *args):
        del args
        self.stop()

    @property
    def is_running(self) -> bool:
        return self._listener is not None and not self._listener.closed

    @property
    def port(self) -> Optional[int]:
        if self._listener is None:
            return None
        return self._listener.port

    def start(self) -> bool:
        host = self.config.host
        port = self.config.resolve_port(self.host_port)
        if self._listener is not None:
            logger.debug("Closing existing socket before creating new one")
            self._listener.close()
            self._listener = None

        logger.debug(f"Attempting to create socket server on {host}:{port}")
        try:
            self._listener = self._listener_factory(host, port)
        except OSError as e:
            logger.error(f"Failed to start WebSocket server on {host}:{port}: {e}")
            return False
        logger.info(f"WebSocket server started on {host}:{self.port}")
        return True

    def stop(self) -> None:
        self.registry.close_all()
        if self._listener is not None:
            self._listener.close()
            self._listener = None
            logger.info("WebSocket server stopped")

    def schedule(self, task: Task) -> None:
        self._pending_tasks.append(task)

    def _run_pending_tasks(self) -> None:
        tasks = list(self._pending_tasks)
        self._pending_tasks.clear()
        for task in tasks:
            try:
                task()
            except Exception as e:  # pylint: disable=broad-except
                logger.exception(e)
                logger.error("Error while running a scheduled task")

    def tick(self, now: Optional[float] = None) -> None:
        if not self.is_running:
            return
        if now is None:
            now = self._clock()

        self._run_pending_tasks()
        self._accept_new_connection(now)
        for connection_id in self.registry.ids():
            self._handle_connection(connection_id, now)
        self.registry.sweep_idle(now, timeout=self.idle_timeout)
        self.registry.sweep_auth_attempts(now)

    def _accept_new_connection(self, now: float) -> None:
        assert self._listener is not None
        try:
            if not self._listener.is_readable():
                return
            handle = self._listener.accept()
        except (OSError, ValueError) as e:
            if self._listener.closed:
                return
            logger.error(f"Listening socket failed: {e}")
            self.stop()
            return
        if handle is None:
            return

        if not self.registry.can_accept():
            # Accept and immediately close to prevent hanging connection
            logger.debug(f"Max connections reached ({self.registry.max_connections}), rejecting new connection")
            handle.close()
            return
        connection_id = self.registry.register(handle, now=now)
        logger.debug(f"New connection added with ID: {connection_id}")

    def _handle_connection(self, connection_id: int, now: float) -> None:
        connection = self.registry.get(connection_id)
        if connection is None:
            return

        try:
            if not connection.socket.is_readable():
                return
            data = connection.socket.read_nonblocking(READ_CHUNK_SIZE)
        except (OSError, ValueError) as e:
            logger.debug(f"Socket read error on connection {connection_id}: {e}")
            self.registry.remove(connection_id)
            return
        if data is None:
            # Would block
            return
        if not data:
            logger.debug(f"Connection {connection_id} closed by peer")
            self.registry.remove(connection_id)
            return

        if not self.registry.append_to_buffer(connection_id, data, now=now):
            logger.warning(f"Connection {connection_id} exceeded buffer limit, disconnecting")
            self.registry.remove(connection_id)
            return

        if not connection.handshake_done:
            self._process_handshake(connection_id)
        else:
            self._process_frames(connection_id)

    def _process_handshake(self, connection_id: int) -> None:
        request = self.registry.get_buffer(connection_id)
        if HEADER_TERMINATOR not in request:
            return

        response = perform_handshake(request)
        if response is None:
            logger.debug(f"Invalid handshake from connection {connection_id}, closing")
            self.registry.remove(connection_id)
            return
        if not self._write(connection_id, response):
            return
        self.registry.mark_handshake_done(connection_id)
        for message in self.message_handler.welcome_messages(connection_id):
            self.message_handler.reply(connection_id, message)

    def _process_frames(self, connection_id: int) -> None:
        while connection_id in self.registry:
            event, consumed = parse_frame(self.registry.get_buffer(connection_id))
            if consumed == 0:
                break
            self.registry.consume(connection_id, consumed)

            if isinstance(event, CloseConnection):
                logger.debug(f"Client {connection_id} sent close frame (code {event.code}), closing connection")
                self._write(connection_id, encode_close(CloseReason.NORMAL_CLOSURE, "Goodbye"))
                self.registry.remove(connection_id)
                return
            elif isinstance(event, Ping):
                self._write(connection_id, encode_pong(event.response().payload))
            elif isinstance(event, TextMessage):
                self.message_handler.handle(connection_id, event.text().strip())

    def _write(self, connection_id: int, data: bytes) -> bool:
        connection = self.registry.get(connection_id)
        if connection is None:
            return False
        try:
            written = connection.socket.write_nonblocking(data)
        except (OSError, ValueError) as e:
            logger.debug(f"Failed to write to connection {connection_id}: {e}")
            self.registry.remove(connection_id)
            return False
        if written < len(data):
            # A partially sent frame would corrupt the stream
            logger.warning(f"Connection {connection_id} is not reading its output, disconnecting")
            self.registry.remove(connection_id)
            return False
        return True

    def send_text(self, connection_id: int, text: str) -> None:
        """
        Send a text frame to a single connection. Unknown connections are ignored.
        """
        self._write(connection_id, encode_frame(text))

    def _broadcast_raw(self, text: str) -> int:
        connections = self.registry.ready_for_broadcast()
        if not connections:
            logger.debug("No authenticated clients to broadcast to")
            return 0

        # Encode the frame only once for all connections
        frame = encode_frame(text)
        for connection in connections:
            self._write(connection.id, frame)
        return len(connections)

    def broadcast(self, message: str) -> None:
        """
        Send a console message to every authenticated client.
        """
        count = self._broadcast_raw(encode_console_message(message))
        if count:
            logger.debug(f"Broadcasted to {count} authenticated clients: {message[:50]}")

    def broadcast_console_output(self, message: str, level: str = "INFO") -> None:
        """
        Relay a line of the host console output (with its log level) to every authenticated client.
        """
        count = self._broadcast_raw(encode_console_message(message, level=level))
        if count:
            logger.debug(f"Broadcasted console output to {count} clients: {message[:50]}")

    def run_forever(self, interval: float = 0.05, should_stop: Optional[Callable[[], bool]] = None) -> None:
        """
        Call :meth:`tick` every ``interval`` seconds until the server is stopped
        or ``should_stop()`` returns ``True``.
        """
        while self.is_running and not (should_stop is not None and should_stop()):
            start = time.monotonic()
            self.tick()
            elapsed = time.monotonic() - start
            time.sleep(max(0.0, interval - elapsed))
