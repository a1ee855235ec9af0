"""
Tests for metrics collection, log redaction and request middleware.
"""

import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from monitoring import LoggingContext, MetricsCollector
from monitoring.logging import (
    JSONFormatter,
    get_request_context,
    redact_sensitive_data,
    redact_string,
)
from monitoring.middleware import normalize_path

NULLIFIER = "0x" + "ab12cd" + "0" * 52 + "ef34ff"


class TestMetricsCollector:
    def test_counters_with_labels(self):
        m = MetricsCollector()
        m.increment("rewards_withheld_total", labels={"reason": "CHALLENGE_REQUIRED"})
        m.increment("rewards_withheld_total", 2, labels={"reason": "CHALLENGE_REQUIRED"})
        m.increment("rewards_withheld_total", labels={"reason": "USER_LOCKED"})
        assert m.get_counter("rewards_withheld_total", {"reason": "CHALLENGE_REQUIRED"}) == 3
        assert m.get_counter("rewards_withheld_total", {"reason": "USER_LOCKED"}) == 1
        assert m.get_counter("rewards_withheld_total") == 0

    def test_gauges(self):
        m = MetricsCollector()
        m.set_gauge("active_sessions", 4)
        m.increment_gauge("active_sessions")
        m.decrement_gauge("active_sessions", 2)
        assert m.get_gauge("active_sessions") == 3

    def test_histogram_buckets(self):
        m = MetricsCollector()
        m.observe("suspicion_score", 15, bounds=[20, 50, 80])
        m.observe("suspicion_score", 95, bounds=[20, 50, 80])
        hist = m.get_all()["histograms"]["suspicion_score"]["_total"]
        assert hist["count"] == 2
        assert hist["sum"] == 110
        assert hist["buckets"]["20"] == 1
        assert hist["buckets"]["inf"] == 2

    def test_timer(self):
        m = MetricsCollector()
        with m.timer("sweep_duration_ms", {"task": "sessions"}):
            pass
        hist = m.get_all()["histograms"]["sweep_duration_ms"]['task="sessions"']
        assert hist["count"] == 1

    def test_prometheus_format(self):
        m = MetricsCollector()
        m.increment("rewards_granted_total", 5)
        m.increment("http_requests_total", labels={"method": "GET", "status": "200"})
        m.set_gauge("store_available", 1)
        m.timing("http_request_duration_ms", 12)
        text = m.to_prometheus()
        assert "# TYPE rewardguard_rewards_granted_total counter" in text
        assert "rewardguard_rewards_granted_total 5" in text
        assert 'rewardguard_http_requests_total{method="GET",status="200"} 1' in text
        assert "rewardguard_store_available 1" in text
        assert 'rewardguard_http_request_duration_ms_bucket{le="25"} 1' in text
        assert 'rewardguard_http_request_duration_ms_bucket{le="+Inf"} 1' in text
        assert "rewardguard_http_request_duration_ms_count 1" in text

    def test_reset(self):
        m = MetricsCollector()
        m.increment("x")
        m.reset()
        assert m.get_all()["counters"] == {}


class TestRedaction:
    def test_sensitive_fields(self):
        data = {
            "identity": "u1",
            "view_token": "vt_abcdefgh",
            "proof": {"merkle_root": "0x1"},
            "nested": [{"api_key": "k"}],
        }
        redacted = redact_sensitive_data(data)
        assert redacted["identity"] == "u1"
        assert redacted["view_token"] == "[REDACTED]"
        assert redacted["proof"] == "[REDACTED]"
        assert redacted["nested"][0]["api_key"] == "[REDACTED]"

    def test_key_value_secrets(self):
        assert redact_string("api_key=abc123 ok") == "api_key=[REDACTED] ok"
        assert redact_string("Authorization: Bearer xyz") == "Authorization: Bearer [REDACTED]"

    def test_view_token_keeps_prefix(self):
        assert redact_string("issued vt_abcdefghijkl to u1") == "issued vt_abcd... to u1"

    def test_nullifier_shortened(self):
        assert redact_string(f"credited {NULLIFIER}") == "credited 0xab12cd...ef34ff"

    def test_plain_text_untouched(self):
        assert redact_string("Challenge issued for u1") == "Challenge issued for u1"

    def test_max_depth(self):
        data = {"a": "x"}
        for _ in range(12):
            data = {"n": data}
        assert "[MAX_DEPTH_EXCEEDED]" in json.dumps(redact_sensitive_data(data))


class TestJSONFormatter:
    def _record(self, msg, level=logging.INFO, **extra):
        record = logging.LogRecord("integrity_engine", level, __file__, 10, msg, None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_structure(self):
        entry = json.loads(JSONFormatter().format(self._record("Reward granted")))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "integrity_engine"
        assert entry["message"] == "Reward granted"
        assert "location" not in entry

    def test_warning_has_location(self):
        entry = json.loads(JSONFormatter().format(self._record("Reward withheld", logging.WARNING)))
        assert entry["location"]["line"] == 10

    def test_extras_are_redacted(self):
        record = self._record("token=secretvalue", identity="u1", proof="p")
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "token=[REDACTED]"
        assert entry["identity"] == "u1"
        assert entry["proof"] == "[REDACTED]"

    def test_context(self):
        with LoggingContext(identity="u1", operation="complete_session"):
            entry = json.loads(JSONFormatter().format(self._record("x")))
        assert entry["context"] == {"identity": "u1", "operation": "complete_session"}
        assert get_request_context() == {}


class TestMiddleware:
    def test_identity_paths_are_folded(self):
        assert normalize_path("/daily-stats/0xabc") == "/daily-stats/:identity"
        assert normalize_path("/reverification/u1") == "/reverification/:identity"
        assert normalize_path("/evaluate/u1") == "/evaluate/:identity"

    def test_other_paths_unchanged(self):
        assert normalize_path("/sessions/start") == "/sessions/start"
        assert normalize_path("") == "/"

    def test_request_id_header(self, flask_client):
        response = flask_client.get("/health/live", headers={"X-Request-ID": "req-1"})
        assert response.headers["X-Request-ID"] == "req-1"

    def test_requests_are_counted(self, flask_client):
        from monitoring import metrics

        flask_client.get("/evaluate/u1")
        assert metrics.get_counter(
            "http_requests_total",
            {"method": "GET", "path": "/evaluate/:identity", "status": "200"},
        ) == 1
