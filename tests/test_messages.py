import json
import pytest
from wsrcon import (
    Auth,
    BareCommand,
    Command,
    ConnectionRegistry,
    Malformed,
    ServerConfig,
    Unknown,
    parse_message,
    sanitize_command,
)
from wsrcon._messages import MessageHandler, encode_console_message, encode_response_message


@pytest.mark.parametrize(("text", "expected"), [
    ('{"type": "auth", "password": "secret"}', Auth("secret")),
    ('{"type": "auth"}', Auth("")),
    ('{"type": "command", "command": "list"}', Command("list", None)),
    ('{"type": "command", "command": "list", "password": "x"}', Command("list", "x")),
    ('{"type": "ping"}', Unknown("ping")),
    ('{}', Unknown("unknown")),
    ("list", BareCommand("list")),
    ("say hello {world}", BareCommand("say hello {world}")),
    ("[1, 2]", BareCommand("[1, 2]")),
])
def test_parse_message(text, expected):
    assert parse_message(text) == expected


@pytest.mark.parametrize("text", ['{"type": "auth"', "{not json}", '{"a": 1} trailing'])
def test_parse_malformed_message(text):
    assert isinstance(parse_message(text), Malformed)


def test_sanitize_command():
    assert sanitize_command("say\x00 hi\x07\x1b") == "say hi"
    assert sanitize_command("say\thi\r\n") == "say\thi\r\n"
    assert sanitize_command("say héllo") == "say héllo"


def test_encode_messages():
    data = json.loads(encode_console_message("§aHello \x1b[31mworld\x1b[0m", level="WARN", now=0))
    assert data["type"] == "console"
    assert data["message"] == "Hello world"
    assert data["level"] == "WARN"
    assert len(data["timestamp"]) == 8

    data = json.loads(encode_response_message("§cDone"))
    assert data["type"] == "response"
    assert data["message"] == "Done"
    assert "level" not in data


class FakeExecutor:
    def __init__(self, known=("list",), error=None):
        self.known = known
        self.error = error
        self.commands = []

    def dispatch(self, command, sink):
        self.commands.append(command)
        if self.error is not None:
            raise self.error
        if command.split()[0] not in self.known:
            return False
        sink.send_message(f"ran {command}")
        return True


class HandlerHarness:
    def __init__(self, make_socket, clock, password="", executor=None, status_provider=None):
        self.config = ServerConfig(password=password)
        self.registry = ConnectionRegistry(password_required=self.config.password_required, clock=clock)
        self.sent = []
        self.broadcasts = []
        self.tasks = []
        self.handler = MessageHandler(
            self.registry,
            self.config,
            send=lambda connection_id, text: self.sent.append((connection_id, json.loads(text))),
            broadcast=self.broadcasts.append,
            scheduler=self.tasks.append,
            executor=executor,
            status_provider=status_provider,
            clock=clock)
        self.make_socket = make_socket

    def connect(self, address=("10.0.0.1", 50000)):
        connection_id = self.registry.register(self.make_socket(address))
        self.registry.mark_handshake_done(connection_id)
        return connection_id

    def replies(self, connection_id=None):
        out = [data["message"] for cid, data in self.sent if connection_id is None or cid == connection_id]
        self.sent.clear()
        return out

    def run_tasks(self):
        tasks, self.tasks[:] = list(self.tasks), []
        for task in tasks:
            task()


@pytest.fixture
def harness(make_socket, clock):
    def make(**kwargs):
        return HandlerHarness(make_socket, clock, **kwargs)
    return make


def test_auth_not_required(harness):
    h = harness()
    connection_id = h.connect()
    h.handler.handle(connection_id, '{"type": "auth", "password": "anything"}')
    assert h.replies() == ["Authentication not required - access granted."]
    assert h.registry.is_authenticated(connection_id)


def test_auth_success(harness):
    h = harness(password="secret")
    connection_id = h.connect()
    assert not h.registry.is_authenticated(connection_id)
    h.handler.handle(connection_id, '{"type": "auth", "password": "secret"}')
    assert h.replies() == ["Authentication successful! Console access granted."]
    assert h.registry.is_authenticated(connection_id)


def test_auth_failure_and_lockout(harness, clock):
    h = harness(password="secret")
    connection_id = h.connect()
    for _ in range(5):
        h.handler.handle(connection_id, '{"type": "auth", "password": "wrong"}')
    assert h.replies() == ["Authentication failed - incorrect password."] * 5
    assert h.registry.auth_attempts("10.0.0.1").count == 5

    # Locked out, even with the right password and from another connection
    other_id = h.connect(("10.0.0.1", 50001))
    h.handler.handle(other_id, '{"type": "auth", "password": "secret"}')
    assert h.replies() == ["Too many failed attempts. Please wait before trying again."]
    assert not h.registry.is_authenticated(other_id)

    # Other addresses can still authenticate
    third_id = h.connect(("10.0.0.2", 50000))
    h.handler.handle(third_id, '{"type": "auth", "password": "secret"}')
    assert h.replies() == ["Authentication successful! Console access granted."]

    clock.advance(299)
    h.handler.handle(connection_id, '{"type": "auth", "password": "secret"}')
    assert h.replies() == ["Too many failed attempts. Please wait before trying again."]

    clock.advance(1)
    h.handler.handle(connection_id, '{"type": "auth", "password": "secret"}')
    assert h.replies() == ["Authentication successful! Console access granted."]
    assert h.registry.auth_attempts("10.0.0.1") is None


def test_command_requires_authentication(harness):
    executor = FakeExecutor()
    h = harness(password="secret", executor=executor)
    connection_id = h.connect()
    h.handler.handle(connection_id, "list")
    assert h.replies() == ["Authentication required. Please authenticate first."]

    h.handler.handle(connection_id, '{"type": "command", "command": "list"}')
    assert h.replies() == ["Authentication required or password incorrect."]
    h.handler.handle(connection_id, '{"type": "command", "command": "list", "password": "wrong"}')
    assert h.replies() == ["Authentication required or password incorrect."]
    assert h.registry.auth_attempts("10.0.0.1").count == 2

    assert h.broadcasts == []
    assert h.tasks == []
    assert executor.commands == []


def test_command_auto_authentication(harness):
    executor = FakeExecutor()
    h = harness(password="secret", executor=executor)
    connection_id = h.connect()
    h.handler.handle(connection_id, '{"type": "command", "command": "list", "password": "secret"}')
    assert h.replies() == ["Auto-authenticated with command."]
    assert h.registry.is_authenticated(connection_id)
    assert h.broadcasts == ["> list"]

    # The command is executed later
    assert executor.commands == []
    h.run_tasks()
    assert executor.commands == ["list"]
    assert h.replies() == ["ran list"]


def test_command_auto_authentication_when_locked_out(harness):
    h = harness(password="secret", executor=FakeExecutor())
    connection_id = h.connect()
    for _ in range(5):
        h.registry.record_auth_attempt("10.0.0.1", False)
    h.handler.handle(connection_id, '{"type": "command", "command": "list", "password": "secret"}')
    assert h.replies() == ["Too many failed attempts. Please wait before trying again."]
    assert not h.registry.is_authenticated(connection_id)


def test_bare_command(harness):
    executor = FakeExecutor()
    h = harness(executor=executor)
    connection_id = h.connect()
    h.handler.handle(connection_id, "list all")
    assert h.broadcasts == ["> list all"]
    h.run_tasks()
    assert executor.commands == ["list all"]
    assert h.replies(connection_id) == ["ran list all"]


def test_command_with_password_when_authenticated(harness):
    executor = FakeExecutor()
    h = harness(password="secret", executor=executor)
    connection_id = h.connect()
    h.registry.set_authenticated(connection_id, True)
    h.handler.handle(connection_id, '{"type": "command", "command": "list", "password": "wrong"}')
    h.run_tasks()
    assert executor.commands == ["list"]
    assert h.registry.auth_attempts("10.0.0.1") is None


def test_command_length_limit(harness):
    executor = FakeExecutor(known=("a" * 1000,))
    h = harness(executor=executor)
    connection_id = h.connect()
    h.handler.handle(connection_id, "a" * 1001)
    assert h.replies() == ["Command too long (max 1000 characters)"]
    assert h.tasks == []

    h.handler.handle(connection_id, "a" * 1000)
    assert h.broadcasts == ["> " + "a" * 1000]
    h.run_tasks()
    assert executor.commands == ["a" * 1000]


def test_command_is_sanitized(harness):
    executor = FakeExecutor()
    h = harness(executor=executor)
    connection_id = h.connect()
    h.handler.handle(connection_id, '{"type": "command", "command": "  list\\u0000 \\u0007"}')
    assert h.broadcasts == ["> list"]
    h.run_tasks()
    assert executor.commands == ["list"]


@pytest.mark.parametrize("text", ['{"type": "command", "command": ""}', '{"type": "command", "command": "\\u0000 "}'])
def test_empty_command_is_ignored(harness, text):
    h = harness(executor=FakeExecutor())
    connection_id = h.connect()
    h.handler.handle(connection_id, text)
    assert h.replies() == []
    assert h.broadcasts == []
    assert h.tasks == []


def test_unknown_command(harness):
    h = harness(executor=FakeExecutor())
    connection_id = h.connect()
    h.handler.handle(connection_id, "foo bar")
    h.run_tasks()
    assert h.broadcasts == [
        "> foo bar",
        "Unknown command: foo bar",
        "Type 'help' to see available commands.",
    ]
    assert h.replies(connection_id) == [
        "Unknown command: foo bar",
        "Type 'help' to see available commands.",
    ]


def test_no_executor(harness):
    h = harness()
    connection_id = h.connect()
    h.handler.handle(connection_id, "list")
    h.run_tasks()
    assert h.replies(connection_id) == [
        "Unknown command: list",
        "Type 'help' to see available commands.",
    ]


def test_executor_error(harness):
    h = harness(executor=FakeExecutor(error=RuntimeError("boom")))
    connection_id = h.connect()
    h.handler.handle(connection_id, "list")
    h.run_tasks()
    assert h.replies(connection_id) == ["Error while executing command"]


def test_malformed_and_unknown_messages(harness):
    h = harness()
    connection_id = h.connect()
    h.handler.handle(connection_id, '{"type": "auth"')
    h.handler.handle(connection_id, '{"type": "subscribe"}')
    assert h.replies() == ["Malformed JSON message", "Unknown message type: subscribe"]
    assert h.broadcasts == []


@pytest.mark.parametrize(("password", "authenticated", "expected"), [
    ("", True, "No authentication required - console ready!"),
    ("secret", True, "Authentication not required for this session."),
    ("secret", False, "Authentication required. Please provide password."),
])
def test_welcome_messages(harness, password, authenticated, expected):
    h = harness(password=password)
    connection_id = h.connect()
    if authenticated:
        h.registry.set_authenticated(connection_id, True)
    banner, auth_status = h.handler.welcome_messages(connection_id)
    assert banner.startswith("===== WebSocket Console =====\n")
    assert "Connected at: " in banner
    assert "Server:" not in banner
    assert auth_status == expected


def test_welcome_banner_with_status(harness):
    h = harness(status_provider=lambda: {
        "name": "Test Server",
        "version": "1.2.3",
        "online_players": 3,
        "max_players": 20,
    })
    banner, _ = h.handler.welcome_messages(h.connect())
    lines = banner.split("\n")
    assert lines[0] == "===== WebSocket Console ====="
    assert lines[1:4] == ["Server: Test Server", "Version: 1.2.3", "Players: 3/20"]
    assert lines[4].startswith("Connected at: ")
    assert lines[5] == "=" * len(lines[0])
