"""Unit tests for fault server counters."""

from metrics import MetricsRegistry


def test_connection_counters_track_active_connections() -> None:
    metrics = MetricsRegistry()

    metrics.connection_opened()
    metrics.connection_opened()
    metrics.connection_closed()
    metrics.connection_closed()
    metrics.connection_closed()

    snapshot = metrics.snapshot()
    assert snapshot["connections_accepted"] == 2
    assert snapshot["active_connections"] == 0


def test_record_response_counts_outcomes_and_faults() -> None:
    metrics = MetricsRegistry()

    metrics.record_response(status_code=200, outcome="completed", bytes_sent=80, faults=[])
    metrics.record_response(
        status_code=504,
        outcome="closed_in_body",
        bytes_sent=40,
        faults=["sleep_body", "close_body"],
    )
    metrics.record_client_body_rejected()

    snapshot = metrics.snapshot()
    assert snapshot["responses_total"] == 2
    assert snapshot["responses_completed"] == 1
    assert snapshot["bytes_sent_total"] == 120
    assert snapshot["status_counts"] == {"200": 1, "504": 1}
    assert snapshot["outcome_counts"] == {"completed": 1, "closed_in_body": 1}
    assert snapshot["faults_by_directive"] == {
        "sleep_body": 1,
        "close_body": 1,
        "close_client_body": 1,
    }
    assert snapshot["client_bodies_rejected"] == 1


def test_error_counters() -> None:
    metrics = MetricsRegistry()

    metrics.record_peer_close()
    metrics.record_parse_error()
    metrics.record_error("TimeoutError")
    metrics.record_bytes_received(17)

    snapshot = metrics.snapshot()
    assert snapshot["peer_closes"] == 1
    assert snapshot["parse_errors"] == 1
    assert snapshot["errors_by_type"] == {"TimeoutError": 1}
    assert snapshot["bytes_received_total"] == 17
