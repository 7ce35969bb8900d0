from ._types import (
    SocketHandle as SocketHandle,
    ReplySink as ReplySink,
    CommandExecutor as CommandExecutor,
    ServerStatus as ServerStatus,
    StatusProvider as StatusProvider,
)
from ._config import (
    ServerConfig as ServerConfig,
    load_config as load_config,
)
from ._frames import (
    Opcode as Opcode,
    CloseReason as CloseReason,
    TextMessage as TextMessage,
    Ping as Ping,
    Pong as Pong,
    CloseConnection as CloseConnection,
    parse_frame as parse_frame,
    decode_frame as decode_frame,
    encode_frame as encode_frame,
    encode_pong as encode_pong,
    encode_close as encode_close,
)
from ._handshake import (
    compute_accept_key as compute_accept_key,
    build_response as build_response,
    validate as validate_handshake,
    perform_handshake as perform_handshake,
)
from ._registry import (
    Connection as Connection,
    ConnectionState as ConnectionState,
    ConnectionRegistry as ConnectionRegistry,
    AuthAttemptRecord as AuthAttemptRecord,
)
from ._messages import (
    Auth as Auth,
    Command as Command,
    BareCommand as BareCommand,
    Unknown as Unknown,
    Malformed as Malformed,
    parse_message as parse_message,
    sanitize_command as sanitize_command,
)
from ._sockets import (
    TCPSocketHandle as TCPSocketHandle,
    ListeningSocket as ListeningSocket,
)
from ._server import (
    WebSocketServer as WebSocketServer,
)

# The version is read from the installed package metadata
from importlib.metadata import version as _get_version, PackageNotFoundError as _PackageNotFoundError
try:
    __version__ = _get_version("wsrcon")
except _PackageNotFoundError:
    __version__ = "develop"
del _get_version, _PackageNotFoundError
