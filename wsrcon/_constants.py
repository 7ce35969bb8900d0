import os

# RFC6455, Section 1.3 - Opening Handshake
ACCEPT_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_SERVER_PORT = 19132
LISTEN_BACKLOG = 5

MAX_BUFFER_SIZE = 65536  # 64 KiB per connection
READ_CHUNK_SIZE = 4096
CONNECTION_TIMEOUT = 300
MAX_AUTH_ATTEMPTS = 5
AUTH_LOCKOUT_TIME = 300
MAX_COMMAND_LENGTH = 1000

ENV_PREFIX = "WSRCON_"
CONFIG_PATH = os.environ.get("WSRCON_CONFIG", None)
del os
