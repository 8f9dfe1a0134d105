"""Incremental HTTP request parser.

The parser works purely on the bytes already buffered on a
:class:`connection.Connection`. Each call moves the connection forward as
far as those bytes allow and leaves any incomplete remainder buffered, so
a request delivered one byte at a time ends up exactly as if it had
arrived in a single read.
"""

from __future__ import annotations

import enum
import re
from urllib.parse import parse_qsl

from connection import Connection, Phase, RequestLine

LINE_END = re.compile(rb"\r?\n")
HEADER_LINE_END = re.compile(r"\r?\n")
HEADER_BLOCK_END = re.compile(rb"(?:\A|\r?\n)\r?\n")
HEADER_SEPARATOR = ": "


class HTTPRequestParseError(ValueError):
    """Request parse error carrying an HTTP status code."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseOutcome(enum.Enum):
    NEED_MORE = "need_more"
    READY = "ready"
    REJECT_BODY = "reject_body"
    ALREADY_FINISHED = "already_finished"


def advance(connection: Connection) -> ParseOutcome:
    """Advance ``connection`` through as many phases as its buffer allows.

    Returns ``READY`` only on the call that reaches ``FINISHED``; later
    calls return ``ALREADY_FINISHED`` so a response is produced once.
    ``REJECT_BODY`` means the request asked the server to close instead of
    reading its body.
    """
    if connection.phase is Phase.FINISHED:
        return ParseOutcome.ALREADY_FINISHED

    if connection.phase is Phase.AWAITING_REQUEST_LINE:
        match = LINE_END.search(connection.raw_buffer)
        if match is None:
            return ParseOutcome.NEED_MORE
        line = connection.consume(match.end())[: match.start()]
        request_line = parse_request_line(line.decode("iso-8859-1"))
        connection.request_line = request_line
        connection.query_params = parse_query_params(request_line.query)
        connection.advance_to(Phase.AWAITING_HEADERS)

    if connection.phase is Phase.AWAITING_HEADERS:
        match = HEADER_BLOCK_END.search(connection.raw_buffer)
        if match is None:
            return ParseOutcome.NEED_MORE
        block = connection.consume(match.end())[: match.start()]
        headers, headers_lower = parse_header_block(block.decode("iso-8859-1"))
        connection.headers = headers
        connection.headers_lower = headers_lower
        if "content-length" not in headers_lower:
            connection.advance_to(Phase.FINISHED)
            return ParseOutcome.READY
        connection.advance_to(Phase.AWAITING_BODY)

    if "close_client_body" in connection.query_params:
        return ParseOutcome.REJECT_BODY

    expected = content_length(connection)
    if len(connection.raw_buffer) < expected:
        return ParseOutcome.NEED_MORE
    connection.body = connection.consume(expected)
    connection.advance_to(Phase.FINISHED)
    return ParseOutcome.READY


def parse_request_line(line: str) -> RequestLine:
    parts = line.split(None, 2)
    if len(parts) != 3:
        raise HTTPRequestParseError("Invalid request line")

    method, target, http_version = parts
    path, _separator, query = target.partition("?")
    return RequestLine(
        method=method,
        target=target,
        http_version=http_version,
        path=path,
        query=query,
    )


def parse_query_params(query: str) -> dict[str, str]:
    """Parse a query string into a lower-cased, last-write-wins mapping."""
    params: dict[str, str] = {}
    if not query:
        return params
    for name, value in parse_qsl(query, keep_blank_values=True):
        params[name.lower()] = value
    return params


def parse_header_block(block: str) -> tuple[dict[str, str], dict[str, str]]:
    headers: dict[str, str] = {}
    headers_lower: dict[str, str] = {}
    if not block:
        return headers, headers_lower

    for line in HEADER_LINE_END.split(block):
        name, _separator, value = line.partition(HEADER_SEPARATOR)
        headers[name] = value
        headers_lower[name.lower()] = value
    return headers, headers_lower


def content_length(connection: Connection) -> int:
    raw_value = connection.headers_lower.get("content-length")
    if raw_value is None:
        return 0
    value = raw_value.strip()
    if not (value.isascii() and value.isdigit()):
        raise HTTPRequestParseError("Invalid Content-Length")
    return int(value)
