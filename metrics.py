"""Thread-safe in-memory counters for the fault server."""

from __future__ import annotations

import threading
from collections import Counter


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections_accepted = 0
        self._active_connections = 0
        self._responses_total = 0
        self._responses_completed = 0
        self._bytes_sent_total = 0
        self._bytes_received_total = 0
        self._status_counts: Counter[str] = Counter()
        self._faults_by_directive: Counter[str] = Counter()
        self._outcome_counts: Counter[str] = Counter()
        self._peer_closes = 0
        self._client_bodies_rejected = 0
        self._parse_errors = 0
        self._errors_by_type: Counter[str] = Counter()

    def connection_opened(self) -> None:
        with self._lock:
            self._connections_accepted += 1
            self._active_connections += 1

    def connection_closed(self) -> None:
        with self._lock:
            self._active_connections = max(0, self._active_connections - 1)

    def record_bytes_received(self, count: int) -> None:
        with self._lock:
            self._bytes_received_total += count

    def record_response(
        self,
        *,
        status_code: int,
        outcome: str,
        bytes_sent: int,
        faults: list[str],
    ) -> None:
        with self._lock:
            self._responses_total += 1
            if outcome == "completed":
                self._responses_completed += 1
            self._status_counts[str(status_code)] += 1
            self._outcome_counts[outcome] += 1
            self._bytes_sent_total += bytes_sent
            for directive in faults:
                self._faults_by_directive[directive] += 1

    def record_peer_close(self) -> None:
        with self._lock:
            self._peer_closes += 1

    def record_client_body_rejected(self) -> None:
        with self._lock:
            self._client_bodies_rejected += 1
            self._faults_by_directive["close_client_body"] += 1

    def record_parse_error(self) -> None:
        with self._lock:
            self._parse_errors += 1

    def record_error(self, error_type: str) -> None:
        with self._lock:
            self._errors_by_type[error_type] += 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "connections_accepted": self._connections_accepted,
                "active_connections": self._active_connections,
                "responses_total": self._responses_total,
                "responses_completed": self._responses_completed,
                "bytes_sent_total": self._bytes_sent_total,
                "bytes_received_total": self._bytes_received_total,
                "status_counts": dict(self._status_counts),
                "outcome_counts": dict(self._outcome_counts),
                "faults_by_directive": dict(self._faults_by_directive),
                "peer_closes": self._peer_closes,
                "client_bodies_rejected": self._client_bodies_rejected,
                "parse_errors": self._parse_errors,
                "errors_by_type": dict(self._errors_by_type),
            }
