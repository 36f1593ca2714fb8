import json
import logging

from gridrank.core.logging_config import JsonFormatter
from gridrank.observability.events import emit_provider_retry, emit_scan_failed


def _events(caplog):
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == "gridrank.observability"]


def test_scan_failed_event_is_structured(caplog):
    caplog.set_level(logging.INFO, logger="gridrank.observability")
    emit_scan_failed(scan_id="s-1", campaign_id="c-1", reason_code="payment_required", error_message="Scan stopped")
    events = _events(caplog)
    assert events == [
        {
            "event": "scan.failed",
            "scan_id": "s-1",
            "campaign_id": "c-1",
            "reason_code": "payment_required",
            "error_message": "Scan stopped",
        }
    ]
    assert caplog.records[-1].levelno == logging.ERROR


def test_provider_retry_event_rounds_delay(caplog):
    caplog.set_level(logging.INFO, logger="gridrank.observability")
    emit_provider_retry(endpoint_class="maps", attempt=2, reason_code="rate_limited", delay_seconds=1.23456)
    assert _events(caplog)[-1]["delay_seconds"] == 1.235


def test_json_formatter_includes_scan_context():
    record = logging.LogRecord("gridrank.scan", logging.WARNING, __file__, 1, "Grid scan crashed", None, None)
    record.scan_id = "s-1"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["message"] == "Grid scan crashed"
    assert payload["scan_id"] == "s-1"
