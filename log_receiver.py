"""UDP receiver that relays proxy log lines while scenarios run."""

from __future__ import annotations

import argparse
import logging
import re
import socket
import threading
from collections.abc import Callable

from config import HOST, LOG_RECEIVER_BUFFER_SIZE
from socket_handler import close_quietly

logger = logging.getLogger(__name__)

SYSLOG_PREFIX = re.compile(r"^.*?\d\d:\d\d:\d\d ")
RECEIVE_TIMEOUT_SECS = 0.2


def strip_syslog_prefix(line: str) -> str:
    """Drop everything up to and including the first ``HH:MM:SS`` timestamp."""
    return SYSLOG_PREFIX.sub("", line, count=1)


class LogReceiver:
    def __init__(
        self,
        port: int,
        host: str = HOST,
        *,
        sink: Callable[[str], None] | None = None,
    ) -> None:
        self.port = port
        self.host = host
        self._sink = sink or self._log_line
        self._socket: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._running = threading.Event()

    def start(self) -> "LogReceiver":
        udp_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        udp_socket.bind((self.host, self.port))
        udp_socket.settimeout(RECEIVE_TIMEOUT_SECS)
        self.port = udp_socket.getsockname()[1]
        self._socket = udp_socket
        self._running.set()
        self._thread = threading.Thread(
            target=self._receive_loop,
            name="log-receiver",
            daemon=True,
        )
        self._thread.start()
        return self

    def stop(self, join_timeout: float = 2.0) -> None:
        self._running.clear()
        if self._thread is not None:
            self._thread.join(timeout=join_timeout)
            self._thread = None
        if self._socket is not None:
            close_quietly(self._socket)
            self._socket = None

    def _receive_loop(self) -> None:
        udp_socket = self._socket
        if udp_socket is None:
            return
        while self._running.is_set():
            try:
                datagram, _address = udp_socket.recvfrom(LOG_RECEIVER_BUFFER_SIZE)
            except TimeoutError:
                continue
            except OSError:
                if self._running.is_set():
                    logger.exception("Log receiver socket failed")
                return

            text = datagram.decode("utf-8", errors="replace").rstrip("\r\n")
            self._sink(strip_syslog_prefix(text))

    def _log_line(self, line: str) -> None:
        logger.info("%s", line)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print proxy log lines received over UDP")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, required=True)
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    receiver = LogReceiver(args.port, args.host).start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        receiver.stop()
