"""Test client that can stall or half-close while sending a request."""

from __future__ import annotations

import argparse
import json
import logging
import socket
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from typing import BinaryIO

from config import HOST, PORT, STARTUP_TIMEOUT_SECS
from socket_handler import PEER_CLOSED_ERRORS, half_close

logger = logging.getLogger(__name__)

CLIENT_TIMEOUT_SECS = 10.0
RESPONSIVE_RETRY_SECS = 0.1


@dataclass(slots=True)
class ClientResponse:
    """Whatever part of a response arrived before the server closed."""

    head: str | None = None
    proto: str | None = None
    code: int | None = None
    text: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    headers_lower: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    complete_head: bool = False


class FaultClient:
    def __init__(
        self,
        port: int,
        host: str = HOST,
        *,
        timeout: float = CLIENT_TIMEOUT_SECS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.port = port
        self.host = host
        self.timeout = timeout
        self._sleep = sleep

    def request(
        self,
        method: str,
        resource: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: bytes | str | None = None,
        sleep_headers: float | None = None,
        close_headers: bool = False,
        sleep_body: float | None = None,
        close_body: bool = False,
    ) -> ClientResponse:
        """Send one request, injecting client-side stalls and half-closes.

        ``sleep_headers`` pauses after the Host header. ``close_headers``
        half-closes there instead of finishing the header block.
        ``sleep_body`` pauses between the two halves of ``body`` and
        ``close_body`` half-closes instead of sending the second half.
        """
        if isinstance(body, str):
            body = body.encode("utf-8")

        with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
            try:
                self._send_request(
                    sock,
                    method=method,
                    resource=resource,
                    headers=headers or {},
                    body=body,
                    sleep_headers=sleep_headers,
                    close_headers=close_headers,
                    sleep_body=sleep_body,
                    close_body=close_body,
                )
            except PEER_CLOSED_ERRORS as exc:
                logger.debug("Server closed while request was being sent: %s", exc)
            return self._read_response(sock)

    def _send_request(
        self,
        sock: socket.socket,
        *,
        method: str,
        resource: str,
        headers: Mapping[str, str],
        body: bytes | None,
        sleep_headers: float | None,
        close_headers: bool,
        sleep_body: float | None,
        close_body: bool,
    ) -> None:
        sock.sendall(f"{method.upper()} {resource} HTTP/1.1\r\n".encode("iso-8859-1"))
        sock.sendall(f"Host: {self.host}\r\n".encode("iso-8859-1"))

        if sleep_headers:
            self._sleep(sleep_headers)
        if close_headers:
            half_close(sock)
            return

        lines = [f"{name}: {value}\r\n" for name, value in headers.items()]
        lines.append(f"Content-Length: {len(body) if body is not None else 0}\r\n")
        lines.append("Connection: close\r\n")
        lines.append("\r\n")
        sock.sendall("".join(lines).encode("iso-8859-1"))

        if body is None:
            return

        half = len(body) // 2
        if half:
            sock.sendall(body[:half])
        if sleep_body:
            self._sleep(sleep_body)
        if close_body:
            half_close(sock)
            return
        sock.sendall(body[half:])

    def _read_response(self, sock: socket.socket) -> ClientResponse:
        response = ClientResponse()
        with sock.makefile("rb") as stream:
            try:
                self._read_into(stream, response)
            except PEER_CLOSED_ERRORS as exc:
                logger.debug("Server reset the connection mid-response: %s", exc)
        return response

    def _read_into(self, stream: BinaryIO, response: ClientResponse) -> None:
        line = stream.readline()
        if not line:
            return
        response.head = line.rstrip(b"\r\n").decode("iso-8859-1")
        parts = response.head.split(" ", 2)
        response.proto = parts[0]
        if len(parts) > 1 and parts[1].isdigit():
            response.code = int(parts[1])
        if len(parts) > 2:
            response.text = parts[2]
        if not line.endswith(b"\n"):
            return

        while True:
            line = stream.readline()
            if not line.endswith(b"\n"):
                return
            text = line.rstrip(b"\r\n").decode("iso-8859-1")
            if not text:
                break
            name, _separator, value = text.partition(": ")
            response.headers[name] = value
            response.headers_lower[name.lower()] = value

        response.complete_head = True
        length = response.headers_lower.get("content-length", "").strip()
        if length.isdigit():
            response.body = stream.read(int(length))
        else:
            response.body = stream.read()


def wait_responsive(host: str, port: int, timeout: float = STARTUP_TIMEOUT_SECS) -> None:
    """Retry ``GET /`` until something accepts connections on ``port``."""
    deadline = time.monotonic() + timeout
    client = FaultClient(port, host, timeout=timeout)
    while True:
        try:
            client.request("GET", "/")
            return
        except ConnectionRefusedError as exc:
            if time.monotonic() >= deadline:
                raise TimeoutError(f"{host}:{port} did not become responsive") from exc
            time.sleep(RESPONSIVE_RETRY_SECS)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send one fault-injecting request")
    parser.add_argument("method")
    parser.add_argument("resource")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--body")
    parser.add_argument("--header", action="append", default=[], help="Name: value")
    parser.add_argument("--sleep-headers", type=float)
    parser.add_argument("--close-headers", action="store_true")
    parser.add_argument("--sleep-body", type=float)
    parser.add_argument("--close-body", action="store_true")
    parser.add_argument("--timeout", type=float, default=CLIENT_TIMEOUT_SECS)
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(level=logging.INFO)
    extra_headers = dict(item.split(": ", 1) for item in args.header)
    result = FaultClient(args.port, args.host, timeout=args.timeout).request(
        args.method,
        args.resource,
        headers=extra_headers,
        body=args.body,
        sleep_headers=args.sleep_headers,
        close_headers=args.close_headers,
        sleep_body=args.sleep_body,
        close_body=args.close_body,
    )
    summary = asdict(result)
    if result.body is not None:
        summary["body"] = result.body.decode("utf-8", errors="replace")
    print(json.dumps(summary, indent=2, sort_keys=True))
