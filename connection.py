"""Per-socket request assembly state."""

from __future__ import annotations

import enum
import socket
import time
from dataclasses import dataclass, field

from socket_handler import close_quietly


class Phase(enum.IntEnum):
    AWAITING_REQUEST_LINE = 0
    AWAITING_HEADERS = 1
    AWAITING_BODY = 2
    FINISHED = 3


@dataclass(slots=True, frozen=True)
class RequestLine:
    method: str
    target: str
    http_version: str
    path: str
    query: str = ""


@dataclass(slots=True)
class Connection:
    """Everything the loop knows about one accepted socket.

    ``raw_buffer`` only ever holds bytes the parser has not consumed yet.
    ``phase`` moves forward through :class:`Phase` and never back.
    """

    sock: socket.socket
    address: tuple[str, int]
    connection_id: int
    raw_buffer: bytearray = field(default_factory=bytearray)
    phase: Phase = Phase.AWAITING_REQUEST_LINE
    request_line: RequestLine | None = None
    query_params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    headers_lower: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    bytes_in: int = 0
    started_at: float = field(default_factory=time.perf_counter)
    closed: bool = False

    @property
    def method(self) -> str:
        return self.request_line.method if self.request_line is not None else "-"

    @property
    def path(self) -> str:
        return self.request_line.path if self.request_line is not None else "-"

    def feed(self, chunk: bytes) -> None:
        self.raw_buffer.extend(chunk)
        self.bytes_in += len(chunk)

    def consume(self, count: int) -> bytes:
        """Remove and return the first ``count`` buffered bytes."""
        consumed = bytes(self.raw_buffer[:count])
        del self.raw_buffer[:count]
        return consumed

    def advance_to(self, phase: Phase) -> None:
        if phase < self.phase:
            raise ValueError(f"phase cannot move back from {self.phase.name} to {phase.name}")
        self.phase = phase

    def close(self) -> bool:
        """Close the socket once. Returns False if it was already closed."""
        if self.closed:
            return False
        self.closed = True
        close_quietly(self.sock)
        return True
