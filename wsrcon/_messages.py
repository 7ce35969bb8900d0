import re
import hmac
import json
import logging
from time import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union
from ._types import CommandExecutor, Scheduler, StatusProvider
from ._config import ServerConfig
from ._registry import ConnectionRegistry
from ._constants import MAX_COMMAND_LENGTH
from .utils import clean_text_format, format_timestamp


logger = logging.getLogger("wsrcon.messages")

_CONTROL_CHARACTERS_RE = re.compile("[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

MESSAGE_UNKNOWN_COMMAND = "Unknown command: {}"
MESSAGE_HELP_HINT = "Type 'help' to see available commands."


@dataclass(frozen=True)
class Auth:
    password: str


@dataclass(frozen=True)
class Command:
    command: str
    password: Optional[str] = None


@dataclass(frozen=True)
class BareCommand:
    """Plain (non-JSON) text, interpreted as a console command."""
    command: str


@dataclass(frozen=True)
class Unknown:
    type: str


@dataclass(frozen=True)
class Malformed:
    """Text that looks like a JSON object but cannot be parsed as one."""
    error: str


Message = Union[Auth, Command, BareCommand, Unknown, Malformed]


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def parse_message(text: str) -> Message:
    if not text.lstrip().startswith("{"):
        return BareCommand(text)
    try:
        data = json.loads(text)
    except ValueError as e:
        return Malformed(str(e))
    if not isinstance(data, dict):
        return Malformed(f"expected a JSON object, got {type(data).__name__}")

    message_type = _as_str(data.get("type", "unknown"))
    if message_type == "auth":
        return Auth(_as_str(data.get("password")))
    if message_type == "command":
        password = data.get("password")
        return Command(_as_str(data.get("command")), None if password is None else _as_str(password))
    return Unknown(message_type)


def sanitize_command(command: str) -> str:
    """
    Remove control characters (except tab, LF and CR) from the command.
    """
    return _CONTROL_CHARACTERS_RE.sub("", command)


def _passwords_match(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def encode_console_message(message: str, level: Optional[str] = None, now: Optional[float] = None) -> str:
    data = {
        "type": "console",
        "message": clean_text_format(message),
        "timestamp": format_timestamp(now),
    }
    if level is not None:
        data["level"] = level
    return json.dumps(data)


def encode_response_message(message: str, now: Optional[float] = None) -> str:
    return json.dumps({
        "type": "response",
        "message": clean_text_format(message),
        "timestamp": format_timestamp(now),
    })


class ConnectionReplySink:
    """
    Reply sink of a single connection. Output written after the connection
    was closed is dropped.
    """
    def __init__(self, connection_id: int, send: Callable[[int, str], None]):
        self.connection_id = connection_id
        self._send = send

    def send_message(self, message: str) -> None:
        self._send(self.connection_id, encode_response_message(message))


class MessageHandler:
    """
    Handles application messages (authentication and console commands) of streaming connections.

    Args:
        registry: The connection registry.
        config: Server config (password).
        send: ``send(connection_id, text)`` writes a text frame to a connection.
        broadcast: ``broadcast(message)`` sends a console message to all authenticated clients.
        scheduler: Runs a callable later (e.g. on the next tick).
        executor: Executes console commands.
        status_provider: Returns the server identity for the welcome banner.
    """
    def __init__(self,
                 registry: ConnectionRegistry,
                 config: ServerConfig,
                 *,
                 send: Callable[[int, str], None],
                 broadcast: Callable[[str], None],
                 scheduler: Scheduler,
                 executor: Optional[CommandExecutor] = None,
                 status_provider: Optional[StatusProvider] = None,
                 clock: Callable[[], float] = time):
        self.registry = registry
        self.config = config
        self.executor = executor
        self.status_provider = status_provider
        self._send = send
        self._broadcast = broadcast
        self._scheduler = scheduler
        self._clock = clock

    def reply(self, connection_id: int, message: str) -> None:
        self._send(connection_id, encode_response_message(message))

    def handle(self, connection_id: int, text: str) -> None:
        logger.debug(f"Received message from {connection_id}: {text[:100]}")
        message = parse_message(text)
        if isinstance(message, Auth):
            self.handle_auth(connection_id, message)
        elif isinstance(message, Command):
            self.handle_command(connection_id, message)
        elif isinstance(message, BareCommand):
            if self.registry.is_authenticated(connection_id):
                self.execute(connection_id, message.command)
            else:
                self.reply(connection_id, "Authentication required. Please authenticate first.")
        elif isinstance(message, Malformed):
            logger.debug(f"Malformed message from {connection_id}: {message.error}")
            self.reply(connection_id, "Malformed JSON message")
        else:
            self.reply(connection_id, f"Unknown message type: {message.type}")

    def _ip(self, connection_id: int) -> str:
        connection = self.registry.get(connection_id)
        return connection.ip if connection is not None else "unknown"

    def handle_auth(self, connection_id: int, message: Auth) -> None:
        if not self.config.password_required:
            self.registry.set_authenticated(connection_id, True)
            self.reply(connection_id, "Authentication not required - access granted.")
            return

        ip = self._ip(connection_id)
        now = self._clock()
        if not self.registry.can_attempt_auth(ip, now=now):
            self.reply(connection_id, "Too many failed attempts. Please wait before trying again.")
            logger.warning(f"Rate limited authentication attempt from: {connection_id} ({ip})")
            return

        if _passwords_match(self.config.password, message.password):
            self.registry.set_authenticated(connection_id, True)
            self.registry.record_auth_attempt(ip, True, now=now)
            self.reply(connection_id, "Authentication successful! Console access granted.")
            logger.info(f"WebSocket client authenticated: {connection_id}")
        else:
            self.registry.record_auth_attempt(ip, False, now=now)
            self.reply(connection_id, "Authentication failed - incorrect password.")
            logger.warning(f"WebSocket authentication failed for client: {connection_id} ({ip})")

    def handle_command(self, connection_id: int, message: Command) -> None:
        if not self.registry.is_authenticated(connection_id):
            ip = self._ip(connection_id)
            now = self._clock()
            if not self.registry.can_attempt_auth(ip, now=now):
                self.reply(connection_id, "Too many failed attempts. Please wait before trying again.")
                return
            if not _passwords_match(self.config.password, message.password or ""):
                self.registry.record_auth_attempt(ip, False, now=now)
                self.reply(connection_id, "Authentication required or password incorrect.")
                return
            self.registry.set_authenticated(connection_id, True)
            self.registry.record_auth_attempt(ip, True, now=now)
            self.reply(connection_id, "Auto-authenticated with command.")

        if message.command:
            self.execute(connection_id, message.command)

    def execute(self, connection_id: int, command: str) -> None:
        if len(command) > MAX_COMMAND_LENGTH:
            self.reply(connection_id, f"Command too long (max {MAX_COMMAND_LENGTH} characters)")
            logger.debug(f"Rejected command - too long: {len(command)} chars")
            return

        command = sanitize_command(command).strip()
        if not command:
            return

        logger.info(f"WebSocket command: {command}")
        self._broadcast(f"> {command}")
        self._scheduler(lambda: self._dispatch(connection_id, command))

    def _dispatch(self, connection_id: int, command: str) -> None:
        sink = ConnectionReplySink(connection_id, self._send)
        if self.executor is None:
            success = False
        else:
            try:
                success = self.executor.dispatch(command, sink)
            except Exception as e:  # pylint: disable=broad-except
                logger.exception(e)
                logger.error(f"Error while executing command {command}")
                sink.send_message("Error while executing command")
                return
        if not success:
            self._broadcast(MESSAGE_UNKNOWN_COMMAND.format(command))
            self._broadcast(MESSAGE_HELP_HINT)
            sink.send_message(MESSAGE_UNKNOWN_COMMAND.format(command))
            sink.send_message(MESSAGE_HELP_HINT)

    def welcome_messages(self, connection_id: int) -> List[str]:
        now = self._clock()
        lines = ["===== WebSocket Console ====="]
        if self.status_provider is not None:
            status = self.status_provider()
            lines.extend([
                f"Server: {status['name']}",
                f"Version: {status['version']}",
                f"Players: {status['online_players']}/{status['max_players']}",
            ])
        lines.append(f"Connected at: {format_timestamp(now, '%Y-%m-%d %H:%M:%S')}")
        lines.append("=" * len(lines[0]))
        banner = "\n".join(lines)

        if not self.config.password_required:
            auth_status = "No authentication required - console ready!"
        elif self.registry.is_authenticated(connection_id):
            auth_status = "Authentication not required for this session."
        else:
            auth_status = "Authentication required. Please provide password."
        return [banner, auth_status]
