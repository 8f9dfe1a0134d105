"""Fault-injecting origin server entry point and connection event loop."""

from __future__ import annotations

import argparse
import json
import logging
import selectors
import socket
import threading
import time
from collections.abc import Callable

from client import wait_responsive
from config import (
    HOST,
    LISTEN_BACKLOG,
    LOG_FORMAT,
    PORT,
    SELECT_TIMEOUT_SECS,
    SOCKET_TIMEOUT_SECS,
    STARTUP_TIMEOUT_SECS,
)
from connection import Connection
from metrics import MetricsRegistry
from request import HTTPRequestParseError, ParseOutcome, advance
from response import FaultResponder, ResponseOutcome, ResponseResult
from socket_handler import (
    PEER_CLOSED_ERRORS,
    PeerClosedError,
    read_available,
    switch_to_blocking_writes,
    write_bytes,
)

logger = logging.getLogger(__name__)

BAD_REQUEST_RESPONSE = (
    b"HTTP/1.1 400 Bad Request\r\n"
    b"Connection: close\r\n"
    b"Content-Length: 11\r\n"
    b"Content-Type: text/plain\r\n"
    b"\r\n"
    b"Bad Request"
)


class FaultServer:
    """Single-threaded origin that misbehaves on request.

    All connections are served from one selector loop. Injected delays
    sleep inside that loop, so a delayed response holds up every other
    connection until it finishes.
    """

    def __init__(
        self,
        host: str = HOST,
        port: int = PORT,
        *,
        log_format: str = LOG_FORMAT,
        write_timeout_secs: float = SOCKET_TIMEOUT_SECS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.port = port
        self.log_format = log_format
        self.write_timeout_secs = write_timeout_secs
        self.ready = threading.Event()
        self.metrics = MetricsRegistry()

        self._sleep = sleep
        self._connections: dict[socket.socket, Connection] = {}
        self._next_connection_id = 0
        self._stop_requested = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    def start(self) -> None:
        """Bind, listen and run the event loop on the calling thread until stopped."""
        with (
            socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_socket,
            selectors.DefaultSelector() as selector,
        ):
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.host, self.port))
            server_socket.listen(LISTEN_BACKLOG)
            server_socket.setblocking(False)
            selector.register(server_socket, selectors.EVENT_READ, data=None)
            self.port = server_socket.getsockname()[1]
            self.ready.set()
            logger.info("Fault server listening on %s:%s", self.host, self.port)

            try:
                while not self._stop_requested.is_set():
                    events = selector.select(timeout=SELECT_TIMEOUT_SECS)
                    for key, _mask in events:
                        if key.data is None:
                            self._accept_client(server_socket, selector)
                            continue
                        self._handle_readable(key.data, selector)
            finally:
                for connection in list(self._connections.values()):
                    self._drop_connection(connection, selector)
                logger.info("Fault server on %s:%s stopped", self.host, self.port)

    def start_in_background(self, timeout: float = STARTUP_TIMEOUT_SECS) -> "FaultServer":
        """Run the loop on a daemon thread and wait until it answers requests."""
        self._thread = threading.Thread(
            target=self._run_loop_thread,
            name="fault-server",
            daemon=True,
        )
        self._thread.start()
        if not self.ready.wait(timeout):
            raise RuntimeError("Fault server did not start listening in time")
        wait_responsive(self.host, self.port, timeout=timeout)
        return self

    def stop(self, join_timeout: float = 2.0) -> None:
        """Ask the loop to exit and wait for its thread.

        The loop closes the listener and every live connection on its own
        thread within one select timeout. A stop requested before the loop
        starts makes it exit right after binding.
        """
        self._stop_requested.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)
            self._thread = None

    def _run_loop_thread(self) -> None:
        try:
            self.start()
        except Exception:
            logger.exception("Fault server loop terminated")

    def _accept_client(
        self,
        server_socket: socket.socket,
        selector: selectors.BaseSelector,
    ) -> None:
        try:
            client_socket, address = server_socket.accept()
        except BlockingIOError:
            return
        except OSError:
            if not self._stop_requested.is_set():
                logger.exception("Failed to accept connection")
            return

        client_socket.setblocking(False)
        self._next_connection_id += 1
        connection = Connection(
            sock=client_socket,
            address=address,
            connection_id=self._next_connection_id,
        )
        self._connections[client_socket] = connection
        selector.register(client_socket, selectors.EVENT_READ, data=connection)
        self.metrics.connection_opened()
        logger.debug(
            "Accepted connection %s from %s:%s",
            connection.connection_id,
            address[0],
            address[1],
        )

    def _handle_readable(
        self,
        connection: Connection,
        selector: selectors.BaseSelector,
    ) -> None:
        try:
            self._serve(connection)
        except (PeerClosedError, *PEER_CLOSED_ERRORS) as exc:
            logger.debug(
                "Connection %s closed by peer in %s: %s",
                connection.connection_id,
                connection.phase.name,
                exc,
            )
            self.metrics.record_peer_close()
            self._drop_connection(connection, selector)
            return
        except HTTPRequestParseError as exc:
            logger.warning(
                "Rejecting request on connection %s: %s",
                connection.connection_id,
                exc,
            )
            self.metrics.record_parse_error()
            self._send_bad_request(connection)
        except Exception as exc:
            logger.exception("Unexpected error on connection %s", connection.connection_id)
            self.metrics.record_error(exc.__class__.__name__)
            self._drop_connection(connection, selector)
            return

        if connection.closed:
            self._drop_connection(connection, selector)

    def _serve(self, connection: Connection) -> None:
        chunk = read_available(connection.sock)
        if chunk is None:
            return
        connection.feed(chunk)
        self.metrics.record_bytes_received(len(chunk))

        outcome = advance(connection)
        if outcome is ParseOutcome.REJECT_BODY:
            logger.info(
                "Injecting close_client_body on connection %s",
                connection.connection_id,
            )
            self.metrics.record_client_body_rejected()
            connection.close()
            return
        if outcome is not ParseOutcome.READY:
            return

        responder = FaultResponder(
            connection,
            sleep=self._sleep,
            write_timeout=self.write_timeout_secs,
        )
        try:
            result = responder.run()
        except (PeerClosedError, *PEER_CLOSED_ERRORS):
            self._record_and_log(connection, responder.result(ResponseOutcome.PEER_CLOSED))
            raise
        self._record_and_log(connection, result)
        connection.close()

    def _send_bad_request(self, connection: Connection) -> None:
        try:
            switch_to_blocking_writes(connection.sock, self.write_timeout_secs)
            write_bytes(connection.sock, BAD_REQUEST_RESPONSE)
        except OSError as exc:
            logger.debug(
                "Could not send 400 on connection %s: %s",
                connection.connection_id,
                exc,
            )
        connection.close()

    def _drop_connection(
        self,
        connection: Connection,
        selector: selectors.BaseSelector,
    ) -> None:
        if self._connections.pop(connection.sock, None) is None:
            return
        try:
            selector.unregister(connection.sock)
        except (KeyError, ValueError):
            pass
        connection.close()
        self.metrics.connection_closed()

    def _record_and_log(self, connection: Connection, result: ResponseResult) -> None:
        duration_ms = (time.perf_counter() - connection.started_at) * 1000
        self.metrics.record_response(
            status_code=result.status_code,
            outcome=result.outcome.value,
            bytes_sent=result.bytes_sent,
            faults=result.faults,
        )
        event = {
            "client": connection.address[0],
            "method": connection.method,
            "path": connection.path,
            "status": result.status_code,
            "outcome": result.outcome.value,
            "faults": ",".join(result.faults) or "-",
            "connection_id": connection.connection_id,
            "bytes_in": connection.bytes_in,
            "bytes_out": result.bytes_sent,
            "latency_ms": round(duration_ms, 3),
        }
        if self.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            (
                "client=%s method=%s path=%s status=%s outcome=%s faults=%s "
                "connection_id=%s bytes_in=%s bytes_out=%s duration_ms=%.2f"
            ),
            event["client"],
            event["method"],
            event["path"],
            event["status"],
            event["outcome"],
            event["faults"],
            event["connection_id"],
            event["bytes_in"],
            event["bytes_out"],
            duration_ms,
        )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the fault-injecting origin server")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(level=args.log_level)
    server = FaultServer(host=args.host, port=args.port, log_format=args.log_format)
    try:
        server.start()
    except KeyboardInterrupt:
        server.stop()
