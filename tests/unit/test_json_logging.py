import json
import logging

from meeting_recorder.common.logging import JsonFormatter


def test_json_formatter_includes_payload_and_error():
    record = logging.LogRecord(
        name="meeting-recorder",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg="pipeline_failed",
        args=(),
        exc_info=None,
    )
    record.payload = {"meeting_id": "mtg-1", "step": "transfer_binary"}

    data = json.loads(JsonFormatter().format(record))

    assert data["msg"] == "pipeline_failed"
    assert data["level"] == "ERROR"
    assert data["payload"]["step"] == "transfer_binary"
    assert data["ts"].endswith("Z")
