"""
A minimal standalone console used when the server is not embedded in a host application.
It implements the :class:`wsrcon.CommandExecutor` interface with a handful of built-in commands.
"""
import logging
import platform
from typing import Callable, Dict, List, NamedTuple, Optional, TYPE_CHECKING
from ._types import ReplySink, ServerStatus

if TYPE_CHECKING:
    from ._server import WebSocketServer


CommandFunction = Callable[[List[str], ReplySink], None]


class _RegisteredCommand(NamedTuple):
    fn: CommandFunction
    help: str


class ConsoleCommandMap:
    def __init__(self, name: str = "wsrcon", version: Optional[str] = None):
        from . import __version__

        self.name = name
        self.version = version or __version__
        self.server: Optional["WebSocketServer"] = None
        self.stop_requested = False
        self._commands: Dict[str, _RegisteredCommand] = {}
        self._register_builtin_commands()

    def register(self, name: str, help: str = ""):
        def wrap(fn: CommandFunction) -> CommandFunction:
            self._commands[name.lower()] = _RegisteredCommand(fn, help)
            return fn
        return wrap

    def get_commands(self) -> List[str]:
        return sorted(self._commands.keys())

    def dispatch(self, command: str, sink: ReplySink) -> bool:
        parts = command.split()
        if not parts:
            return False
        registered = self._commands.get(parts[0].lower())
        if registered is None:
            return False
        registered.fn(parts[1:], sink)
        return True

    def get_status(self) -> ServerStatus:
        return {
            "name": self.name,
            "version": self.version,
            "online_players": 0,
            "max_players": 0,
        }

    def _register_builtin_commands(self):
        @self.register("help", "Show the list of available commands")
        def _help(args, sink):
            del args
            for name in self.get_commands():
                sink.send_message(f"/{name}: {self._commands[name].help}")

        @self.register("say", "Broadcast a message to all connected clients")
        def _say(args, sink):
            if not args:
                sink.send_message("Usage: say <message>")
                return
            if self.server is not None:
                self.server.broadcast(f"[Server] {' '.join(args)}")

        @self.register("list", "List connected clients")
        def _list(args, sink):
            del args
            if self.server is None:
                sink.send_message("There are 0 connected clients")
                return
            connections = list(self.server.registry.connections())
            sink.send_message(f"There are {len(connections)} connected clients")
            for connection in connections:
                state = "authenticated" if connection.authenticated else "unauthenticated"
                sink.send_message(f"  #{connection.id} {connection.peer} ({state})")

        @self.register("version", "Show the server version")
        def _version(args, sink):
            del args
            sink.send_message(f"This server is running {self.name} {self.version} (Python {platform.python_version()})")

        @self.register("stop", "Stop the server")
        def _stop(args, sink):
            del args
            sink.send_message("Stopping the server")
            self.stop_requested = True


class ConsoleLogHandler(logging.Handler):
    """
    Logging handler relaying log records of the host application to the WebSocket clients.
    Records emitted by the ``wsrcon`` loggers themselves are never relayed.
    """
    def __init__(self, server: "WebSocketServer", level=logging.INFO):
        super().__init__(level=level)
        self.server = server

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "wsrcon" or record.name.startswith("wsrcon."):
            return False
        return super().filter(record)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.server.broadcast_console_output(self.format(record), level=record.levelname)
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)
