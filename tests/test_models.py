"""
Tests for push event parsing and the per-event merge functions.
"""
import pytest
from pydantic import ValidationError

from swrsync.live_metrics.models import (
    BackupProgress,
    BulkOperationProgress,
    ErrorEvent,
    QuickMetrics,
    ServiceAlert,
    apply_service_alert,
    encode_frame,
    merge_quick_metrics,
    parse_event,
)


class TestParseEvent:
    """Frame validation and dispatch by event name."""

    def test_known_event_is_typed(self):
        event = parse_event("quickMetrics", {"cpu": 20, "memory": 60, "uptime": 110})
        assert isinstance(event, QuickMetrics)
        assert event.cpu == 20.0

    def test_unknown_event_returns_none(self):
        assert parse_event("somethingElse", {"a": 1}) is None

    def test_missing_required_field_raises(self):
        with pytest.raises(ValidationError):
            parse_event("bulkOperationProgress", {"type": "import"})

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            parse_event("serviceAlert", {"service": "redis", "status": "sideways"})

    def test_error_event_accepts_bare_string(self):
        event = parse_event("error", "Token expired")
        assert isinstance(event, ErrorEvent)
        assert event.message == "Token expired"

    def test_error_event_default_message(self):
        assert parse_event("error", None).message == "WebSocket error"

    def test_camel_case_aliases(self):
        event = parse_event("backupProgress", {"status": "completed", "backupId": "b-1"})
        assert isinstance(event, BackupProgress)
        assert event.backup_id == "b-1"
        assert event.model_dump(by_alias=True, exclude_none=True)["backupId"] == "b-1"

    def test_extra_fields_are_kept(self):
        event = parse_event("sessionUpdate", {"stats": {}, "sessionId": "s-9"})
        assert event.model_dump()["sessionId"] == "s-9"

    def test_bulk_finished(self):
        assert BulkOperationProgress(type="import", completed=5, total=5).is_finished
        assert not BulkOperationProgress(type="import", completed=4, total=5).is_finished

    def test_encode_frame(self):
        assert encode_frame("refreshMetrics") == {"event": "refreshMetrics", "data": None}


class TestMerges:
    """Pure merge functions for partial pushes."""

    def test_quick_metrics_merge_touches_only_sampled_fields(self):
        current = {
            "cpu": {"usage": 10},
            "memory": {"usagePercent": 50},
            "application": {"uptime": 100},
        }
        event = QuickMetrics(cpu=20, memory=60, uptime=110)

        assert merge_quick_metrics(current, event) == {
            "cpu": {"usage": 20},
            "memory": {"usagePercent": 60},
            "application": {"uptime": 110},
        }
        assert current["cpu"]["usage"] == 10

    def test_quick_metrics_merge_keeps_other_fields(self):
        current = {
            "cpu": {"usage": 10, "cores": 8},
            "memory": {"usagePercent": 50},
            "application": {"uptime": 100},
            "disk": {"usagePercent": 70},
        }
        merged = merge_quick_metrics(current, QuickMetrics(cpu=20, memory=60, uptime=110))
        assert merged["disk"] is current["disk"]
        assert merged["cpu"] == {"usage": 20, "cores": 8}

    def test_service_alert_flips_listed_service(self):
        health = {"status": "healthy", "services": {"redis": {"status": "up", "responseTime": 3}}}
        updated = apply_service_alert(health, ServiceAlert(service="Redis", status="down"))

        assert updated["services"]["redis"] == {"status": "down", "responseTime": 3}
        assert health["services"]["redis"]["status"] == "up"

    def test_service_alert_ignores_unlisted_service(self):
        health = {"services": {"redis": {"status": "up"}}}
        alert = ServiceAlert(service="minio", status="down")
        assert apply_service_alert(health, alert) is health

    def test_service_alert_without_health(self):
        assert apply_service_alert(None, ServiceAlert(service="redis", status="up")) is None
