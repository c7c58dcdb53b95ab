"""
Tests for the Evolution API client.

The gateway is replaced by httpx.MockTransport; each test checks the
request the client builds and how it maps the response or failure.
"""

import json

import httpx
import pytest

from wa_inbox.gateway import EvolutionClient, GatewayConfig, GatewayError, SendTextRequest


CONFIG = GatewayConfig(base_url="http://gateway.test/", api_key="secret-key", timeout_seconds=5)


def make_client(handler):
    requests = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return EvolutionClient(CONFIG, transport=httpx.MockTransport(recording)), requests


class TestCreate:
    def test_create_with_qr(self):
        client, requests = make_client(lambda request: httpx.Response(201, json={
            "instance": {"instanceName": "acct1", "status": "connecting"},
            "qrcode": {"base64": "data:image/png;base64,AAA", "code": "2@xyz", "pairingCode": "WZYEH1YY"},
        }))

        result = client.create("acct1")

        assert result.status == "connecting"
        assert result.qr.image == "data:image/png;base64,AAA"
        assert result.qr.pairing_code == "WZYEH1YY"

        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://gateway.test/instance/create"
        assert request.headers["apikey"] == "secret-key"
        assert json.loads(request.content) == {
            "instanceName": "acct1",
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }

    def test_pairing_code_falls_back_to_code(self):
        client, _ = make_client(lambda request: httpx.Response(201, json={
            "instance": {"status": "connecting"},
            "qrcode": {"base64": "img", "code": "2@xyz", "pairingCode": None},
        }))

        assert client.create("acct1").qr.pairing_code == "2@xyz"

    def test_create_without_qr(self):
        client, _ = make_client(lambda request: httpx.Response(201, json={"instance": {"status": "open"}}))

        result = client.create("acct1")

        assert result.status == "open"
        assert result.qr is None

    def test_create_error_carries_status(self):
        client, _ = make_client(lambda request: httpx.Response(403, text="name in use"))

        with pytest.raises(GatewayError) as exc_info:
            client.create("acct1")

        assert exc_info.value.status_code == 403
        assert "name in use" in exc_info.value.message


class TestQueries:
    def test_fetch_qr(self):
        client, requests = make_client(lambda request: httpx.Response(200, json={"base64": "img", "code": "2@abc"}))

        qr = client.fetch_qr("acct1")

        assert (qr.image, qr.code) == ("img", "2@abc")
        assert requests[0].method == "GET"
        assert requests[0].url.path == "/instance/connect/acct1"

    def test_connection_state_nested(self):
        client, requests = make_client(
            lambda request: httpx.Response(200, json={"instance": {"instanceName": "acct1", "state": "open"}})
        )

        assert client.connection_state("acct1").state == "open"
        assert requests[0].url.path == "/instance/connectionState/acct1"

    def test_connection_state_flat(self):
        client, _ = make_client(lambda request: httpx.Response(200, json={"instance": "acct1", "state": "close"}))
        assert client.connection_state("acct1").state == "close"

    def test_connection_state_not_found(self):
        client, _ = make_client(lambda request: httpx.Response(404, json={"error": "not found"}))

        with pytest.raises(GatewayError) as exc_info:
            client.connection_state("acct1")

        assert exc_info.value.status_code == 404


class TestWebhookAndTeardown:
    def test_set_webhook_body(self):
        client, requests = make_client(lambda request: httpx.Response(201, json={"enabled": True}))

        client.set_webhook("acct1", "http://inbox.test/webhook", headers={"X-Webhook-Secret": "s"})

        request = requests[0]
        assert request.url.path == "/webhook/set/acct1"
        assert json.loads(request.content) == {
            "webhook": {
                "enabled": True,
                "url": "http://inbox.test/webhook",
                "webhook_by_events": False,
                "events": ["MESSAGES_UPSERT"],
                "headers": {"X-Webhook-Secret": "s"},
            }
        }

    def test_logout_and_delete(self):
        client, requests = make_client(lambda request: httpx.Response(200, json={"status": "SUCCESS"}))

        client.logout("acct1")
        client.delete("acct1")

        assert [(r.method, r.url.path) for r in requests] == [
            ("DELETE", "/instance/logout/acct1"),
            ("DELETE", "/instance/delete/acct1"),
        ]

    def test_empty_response_body(self):
        client, _ = make_client(lambda request: httpx.Response(204))
        assert client.delete("acct1") is None


class TestSendMessage:
    def test_send_text(self):
        client, requests = make_client(lambda request: httpx.Response(201, json={
            "key": {"remoteJid": "5551@s.whatsapp.net", "fromMe": True, "id": "BAE5"},
            "message": {"conversation": "hello"},
            "messageTimestamp": "1700000000",
            "status": "PENDING",
        }))

        result = client.send_message("acct1", SendTextRequest(to="5551", text="hello"))

        assert (result.id, result.timestamp, result.status) == ("BAE5", 1700000000, "PENDING")
        assert requests[0].url.path == "/message/sendText/acct1"
        assert json.loads(requests[0].content) == {
            "number": "5551",
            "text": "hello",
            "delay": 0,
            "linkPreview": False,
        }


class TestTransportFailures:
    def test_timeout_is_gateway_error_without_status(self):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, _ = make_client(timeout)

        with pytest.raises(GatewayError) as exc_info:
            client.connection_state("acct1")

        assert exc_info.value.status_code is None

    def test_invalid_json(self):
        client, _ = make_client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(GatewayError):
            client.fetch_qr("acct1")

    @pytest.mark.parametrize("body", [["open"], "open", 42])
    def test_non_object_payload(self, body):
        client, _ = make_client(lambda request: httpx.Response(200, json=body))

        with pytest.raises(GatewayError) as exc_info:
            client.connection_state("acct1")

        assert "unexpected payload" in exc_info.value.message
