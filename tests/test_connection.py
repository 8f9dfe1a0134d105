"""Unit tests for per-connection state."""

import socket

import pytest

from connection import Connection, Phase


def _connection() -> Connection:
    return Connection(
        sock=socket.socket(socket.AF_INET, socket.SOCK_STREAM),
        address=("127.0.0.1", 5555),
        connection_id=7,
    )


def test_new_connection_awaits_request_line() -> None:
    connection = _connection()
    try:
        assert connection.phase is Phase.AWAITING_REQUEST_LINE
        assert connection.raw_buffer == bytearray()
        assert connection.method == "-"
        assert connection.path == "-"
    finally:
        connection.close()


def test_consume_removes_bytes_from_buffer() -> None:
    connection = _connection()
    try:
        connection.feed(b"abc")
        connection.feed(b"def")

        assert connection.consume(4) == b"abcd"
        assert bytes(connection.raw_buffer) == b"ef"
        assert connection.bytes_in == 6
    finally:
        connection.close()


def test_phase_never_moves_backwards() -> None:
    connection = _connection()
    try:
        connection.advance_to(Phase.AWAITING_BODY)

        with pytest.raises(ValueError, match="cannot move back"):
            connection.advance_to(Phase.AWAITING_HEADERS)
        assert connection.phase is Phase.AWAITING_BODY
    finally:
        connection.close()


def test_close_runs_once() -> None:
    connection = _connection()

    assert connection.close() is True
    assert connection.close() is False
    assert connection.closed is True
    assert connection.sock.fileno() == -1
