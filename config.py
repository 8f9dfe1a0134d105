"""Configuration constants for the fault-injecting origin server."""

HOST: str = "127.0.0.1"
PORT: int = 4001
READ_CHUNK_SIZE: int = 4096
LISTEN_BACKLOG: int = 128
SELECT_TIMEOUT_SECS: float = 0.2
SOCKET_TIMEOUT_SECS: float = 30.0
STARTUP_TIMEOUT_SECS: float = 5.0
LOG_FORMAT: str = "plain"
DEFAULT_STATUS: str = "200"
DEFAULT_STATUS_TEXT: str = "OK"
ECHO_PREFIX: str = "/echo"
LOG_RECEIVER_BUFFER_SIZE: int = 4096
PROXY_STOP_GRACE_SECS: float = 5.0
