import json
import logging

from backend.logging_config import StructuredFormatter


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("incidentdesk.incidents", logging.INFO, __file__, 1, "Incident %s", ("assigned",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_text_format_appends_context_keys():
    line = StructuredFormatter("text").format(_record(incident_id="INC-000007", actor_id=3))

    assert line.startswith("[INFO   ]")
    assert "incidentdesk.incidents: Incident assigned" in line
    assert line.endswith("incident_id=INC-000007 actor_id=3")


def test_json_format_is_one_object_per_line():
    payload = json.loads(StructuredFormatter("json").format(_record(request_id="req-1")))

    assert payload["message"] == "Incident assigned"
    assert payload["request_id"] == "req-1"
    assert "actor_id" not in payload
