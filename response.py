"""Fault-injecting response writer.

A response is written as a fixed sequence of :class:`ResponseStep`
checkpoints. Delay steps sleep for the matching query directive, close
steps drop the connection when their directive is present, and the
remaining steps write one slice of the response. New checkpoints are
added by extending ``RESPONSE_STEPS`` and the lookup tables below.
"""

from __future__ import annotations

import enum
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from config import DEFAULT_STATUS, DEFAULT_STATUS_TEXT, ECHO_PREFIX, SOCKET_TIMEOUT_SECS
from connection import Connection
from socket_handler import switch_to_blocking_writes, write_bytes

logger = logging.getLogger(__name__)


class ResponseStep(enum.Enum):
    SLEEP_STATUS = "sleep_status"
    STATUS_LINE = "status_line"
    SLEEP_HEADERS = "sleep_headers"
    CLOSE_HEADERS = "close_headers"
    ENTITY_HEADERS = "entity_headers"
    SLEEP_BEFORE_BLANK_LINE = "sleep"
    BLANK_LINE = "blank_line"
    BODY_FIRST_HALF = "body_first_half"
    SLEEP_BODY = "sleep_body"
    CLOSE_BODY = "close_body"
    BODY_SECOND_HALF = "body_second_half"
    SLEEP_CLOSE = "sleep_close"


RESPONSE_STEPS: tuple[ResponseStep, ...] = (
    ResponseStep.SLEEP_STATUS,
    ResponseStep.STATUS_LINE,
    ResponseStep.SLEEP_HEADERS,
    ResponseStep.CLOSE_HEADERS,
    ResponseStep.ENTITY_HEADERS,
    ResponseStep.SLEEP_BEFORE_BLANK_LINE,
    ResponseStep.BLANK_LINE,
    ResponseStep.BODY_FIRST_HALF,
    ResponseStep.SLEEP_BODY,
    ResponseStep.CLOSE_BODY,
    ResponseStep.BODY_SECOND_HALF,
    ResponseStep.SLEEP_CLOSE,
)


class ResponseOutcome(enum.Enum):
    COMPLETED = "completed"
    CLOSED_IN_HEADERS = "closed_in_headers"
    CLOSED_IN_BODY = "closed_in_body"
    PEER_CLOSED = "peer_closed"


DELAY_STEPS: dict[ResponseStep, str] = {
    ResponseStep.SLEEP_STATUS: "sleep_status",
    ResponseStep.SLEEP_HEADERS: "sleep_headers",
    ResponseStep.SLEEP_BEFORE_BLANK_LINE: "sleep",
    ResponseStep.SLEEP_BODY: "sleep_body",
    ResponseStep.SLEEP_CLOSE: "sleep_close",
}

CLOSE_STEPS: dict[ResponseStep, tuple[str, ResponseOutcome]] = {
    ResponseStep.CLOSE_HEADERS: ("close_headers", ResponseOutcome.CLOSED_IN_HEADERS),
    ResponseStep.CLOSE_BODY: ("close_body", ResponseOutcome.CLOSED_IN_BODY),
}


@dataclass(slots=True, frozen=True)
class FaultDirectives:
    status: str = DEFAULT_STATUS
    status_text: str = DEFAULT_STATUS_TEXT
    sleep_status: float = 0.0
    sleep_headers: float = 0.0
    close_headers: bool = False
    sleep: float = 0.0
    sleep_body: float = 0.0
    close_body: bool = False
    sleep_close: float = 0.0
    close_client_body: bool = False

    @classmethod
    def from_query_params(cls, params: Mapping[str, str]) -> "FaultDirectives":
        """Build directives from lower-cased query parameters.

        Close directives are active whenever their key is present. Delays
        that are not finite, non-negative numbers are ignored with a
        warning, as is a ``respond_status`` that is not three digits or a
        ``respond_status_text`` that is not printable Latin-1 text.
        """
        status = params.get("respond_status", DEFAULT_STATUS)
        if not _is_status_code(status):
            logger.warning("Ignoring invalid respond_status=%r", status)
            status = DEFAULT_STATUS
        status_text = params.get("respond_status_text", DEFAULT_STATUS_TEXT)
        if not _is_status_text(status_text):
            logger.warning("Ignoring invalid respond_status_text=%r", status_text)
            status_text = DEFAULT_STATUS_TEXT

        return cls(
            status=status,
            status_text=status_text,
            sleep_status=_parse_delay(params, "sleep_status"),
            sleep_headers=_parse_delay(params, "sleep_headers"),
            close_headers="close_headers" in params,
            sleep=_parse_delay(params, "sleep"),
            sleep_body=_parse_delay(params, "sleep_body"),
            close_body="close_body" in params,
            sleep_close=_parse_delay(params, "sleep_close"),
            close_client_body="close_client_body" in params,
        )

    @property
    def status_code(self) -> int:
        return int(self.status)


@dataclass(slots=True)
class ResponseResult:
    outcome: ResponseOutcome
    status_code: int
    bytes_sent: int
    faults: list[str] = field(default_factory=list)


class FaultResponder:
    """Writes one response for a finished connection, honoring its directives."""

    def __init__(
        self,
        connection: Connection,
        *,
        sleep: Callable[[float], None] = time.sleep,
        write_timeout: float = SOCKET_TIMEOUT_SECS,
    ) -> None:
        self.connection = connection
        self.directives = FaultDirectives.from_query_params(connection.query_params)
        self.body = echo_body(connection.path)
        self.write_timeout = write_timeout
        self._sleep = sleep
        self._bytes_sent = 0
        self._faults: list[str] = []

    def run(self) -> ResponseResult:
        switch_to_blocking_writes(self.connection.sock, self.write_timeout)
        for step in RESPONSE_STEPS:
            outcome = self._run_step(step)
            if outcome is not None:
                return self.result(outcome)
        return self.result(ResponseOutcome.COMPLETED)

    def _run_step(self, step: ResponseStep) -> ResponseOutcome | None:
        if step in DELAY_STEPS:
            self._delay(DELAY_STEPS[step])
            return None

        if step in CLOSE_STEPS:
            directive, outcome = CLOSE_STEPS[step]
            if getattr(self.directives, directive):
                logger.info(
                    "Injecting %s on connection %s",
                    directive,
                    self.connection.connection_id,
                )
                self._faults.append(directive)
                self.connection.close()
                return outcome
            return None

        self._bytes_sent += write_bytes(self.connection.sock, self._payload_for(step))
        return None

    def _payload_for(self, step: ResponseStep) -> bytes:
        half = len(self.body) // 2
        if step is ResponseStep.STATUS_LINE:
            head = (
                f"HTTP/1.1 {self.directives.status} {self.directives.status_text}\r\n"
                "Connection: close\r\n"
            )
            return head.encode("iso-8859-1")
        if step is ResponseStep.ENTITY_HEADERS:
            return (
                f"Content-Length: {len(self.body)}\r\n"
                "Content-Type: text/plain\r\n"
            ).encode("ascii")
        if step is ResponseStep.BLANK_LINE:
            return b"\r\n"
        if step is ResponseStep.BODY_FIRST_HALF:
            return self.body[:half]
        if step is ResponseStep.BODY_SECOND_HALF:
            return self.body[half:]
        raise ValueError(f"Step {step.name} does not write bytes")

    def _delay(self, directive: str) -> None:
        seconds = getattr(self.directives, directive)
        if seconds <= 0:
            return
        logger.info(
            "Injecting %s=%s on connection %s",
            directive,
            seconds,
            self.connection.connection_id,
        )
        self._faults.append(directive)
        self._sleep(seconds)

    def result(self, outcome: ResponseOutcome) -> ResponseResult:
        """Summarize what has been written and injected so far."""
        return ResponseResult(
            outcome=outcome,
            status_code=self.directives.status_code,
            bytes_sent=self._bytes_sent,
            faults=list(self._faults),
        )


def echo_body(path: str) -> bytes:
    """Return the sub-path of an ``/echo/...`` request, or an empty body."""
    if path == ECHO_PREFIX:
        return b""
    prefix = ECHO_PREFIX + "/"
    if not path.startswith(prefix):
        return b""
    return path[len(prefix):].encode("iso-8859-1", errors="replace")


def _is_status_code(value: str) -> bool:
    return len(value) == 3 and value.isascii() and value.isdigit()


def _is_status_text(value: str) -> bool:
    return value.isprintable() and all(ord(char) < 256 for char in value)


def _parse_delay(params: Mapping[str, str], name: str) -> float:
    raw_value = params.get(name)
    if raw_value is None:
        return 0.0
    try:
        seconds = float(raw_value)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw_value)
        return 0.0
    if not math.isfinite(seconds) or seconds < 0:
        logger.warning("Ignoring invalid %s=%r", name, raw_value)
        return 0.0
    return seconds
