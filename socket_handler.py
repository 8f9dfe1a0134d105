"""Low-level socket read/write utilities."""

from __future__ import annotations

import socket

from config import READ_CHUNK_SIZE

PEER_CLOSED_ERRORS: tuple[type[OSError], ...] = (
    ConnectionResetError,
    BrokenPipeError,
    ConnectionAbortedError,
)


class PeerClosedError(ConnectionError):
    """Raised when the peer ended the stream before the request completed."""


def read_available(sock: socket.socket, size: int = READ_CHUNK_SIZE) -> bytes | None:
    """Read whatever a non-blocking socket has ready.

    Returns ``None`` when nothing is ready yet. Raises
    :class:`PeerClosedError` on end-of-stream.
    """
    try:
        chunk = sock.recv(size)
    except BlockingIOError:
        return None
    if not chunk:
        raise PeerClosedError("Peer closed the connection")
    return chunk


def switch_to_blocking_writes(sock: socket.socket, timeout: float) -> None:
    sock.settimeout(timeout)


def write_bytes(sock: socket.socket, payload: bytes) -> int:
    """Write the complete payload to a socket."""
    if not payload:
        return 0
    sock.sendall(payload)
    return len(payload)


def half_close(sock: socket.socket) -> None:
    """Shut down the write side, keeping the read side open."""
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError:
        pass


def close_quietly(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError:
        pass
