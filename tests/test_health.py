"""Tests for utils/health.py"""

from conftest import make_record
from quorum_dns.models.record import CONDITION_TYPE_READY, STATUS_TRUE, Condition
from quorum_dns.utils.health import render_metrics


class TestRenderMetrics:
    """Tests for render_metrics."""

    def test_without_records(self):
        text = render_metrics([])
        assert "quorum_dns_up 1\n" in text
        assert "quorum_dns_record_ready{" not in text

    def test_record_gauges(self):
        """Should report readiness and the write counter per record."""
        ready = make_record("app", "app.example.com")
        ready.status.set_condition(Condition(type=CONDITION_TYPE_READY, status=STATUS_TRUE))
        ready.status.write_counter = 3
        pending = make_record("web", "web.example.com", namespace="edge")

        lines = render_metrics([ready, pending]).splitlines()

        labels = 'namespace="default",name="app",root_host="app.example.com"'
        assert f"quorum_dns_record_ready{{{labels}}} 1" in lines
        assert f"quorum_dns_record_write_counter{{{labels}}} 3" in lines
        assert 'quorum_dns_record_ready{namespace="edge",name="web",root_host="web.example.com"} 0' in lines
