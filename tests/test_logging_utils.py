"""
Tests for structured request logging.
"""

import json
import logging

from wa_inbox.logging_utils import CustomJsonFormatter, request_id_ctx


def request_logs(caplog):
    return [r for r in caplog.records if r.name == "wa_inbox.requests"]


class TestJsonFormatter:
    def test_adds_ts_level_and_request_id(self):
        formatter = CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s')
        record = logging.LogRecord("wa_inbox.test", logging.INFO, __file__, 1, "hello", None, None)

        token = request_id_ctx.set("req-1")
        try:
            output = json.loads(formatter.format(record))
        finally:
            request_id_ctx.reset(token)

        assert output["ts"].endswith("Z")
        assert output["level"] == "INFO"
        assert output["request_id"] == "req-1"
        assert output["message"] == "hello"

    def test_no_request_id_outside_request(self):
        formatter = CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s')
        record = logging.LogRecord("wa_inbox.test", logging.INFO, __file__, 1, "bg", None, None)

        output = json.loads(formatter.format(record))

        assert "request_id" not in output


class TestRequestLogging:
    def test_request_id_header_and_log(self, client, caplog):
        caplog.set_level(logging.INFO)

        response = client.get("/health/live")

        request_id = response.headers["X-Request-ID"]
        logs = request_logs(caplog)
        assert logs[-1].request_id == request_id
        assert logs[-1].path == "/health/live"
        assert logs[-1].status == 200

    def test_webhook_fields_in_request_log(self, client, webhook_headers, caplog):
        caplog.set_level(logging.INFO)
        body = json.dumps({
            "event": "messages.upsert",
            "instance": "nobody",
            "data": {"key": {"id": "MSG9"}, "message": {"conversation": "hi"}},
        })

        client.post("/webhook", content=body, headers=webhook_headers)

        log = request_logs(caplog)[-1]
        assert log.instance == "nobody"
        assert log.result == "no_user"
        assert log.dup is False
