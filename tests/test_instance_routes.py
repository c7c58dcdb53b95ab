"""
Tests for the /instance endpoints.

The gateway is a FakeGateway injected through dependency overrides; the
caller is identified by the X-Account-ID header set by the session layer.
"""


def auth(account_id):
    return {"X-Account-ID": account_id}


class TestIdentity:
    def test_missing_account_header(self, client):
        response = client.get("/instance")

        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized"}

    def test_unknown_account(self, client):
        response = client.get("/instance", headers=auth("nobody"))
        assert response.status_code == 404


class TestCreateInstance:
    def test_create(self, client, make_account, fake_gateway):
        account_id = make_account()

        response = client.post("/instance", json={"instanceName": "acct1"}, headers=auth(account_id))

        assert response.status_code == 200
        assert response.json() == {
            "accountId": account_id,
            "instanceName": "acct1",
            "status": "CONNECTING",
            "phase": "PAIRING",
            "qrImage": "data:image/png;base64,QR1",
            "pairingCode": "PAIR-1",
        }
        assert fake_gateway.called("set_webhook")[0][1] == "http://inbox.test/webhook"

    def test_instance_name_required(self, client, make_account):
        response = client.post("/instance", json={}, headers=auth(make_account()))
        assert response.status_code == 422

    def test_already_provisioned(self, client, make_account, fake_gateway):
        account_id = make_account(instance_name="acctY")

        response = client.post("/instance", json={"instanceName": "acctX"}, headers=auth(account_id))

        assert response.status_code == 409
        assert fake_gateway.calls == []

    def test_name_taken(self, client, make_account):
        make_account(instance_name="acct1")

        response = client.post("/instance", json={"instanceName": "acct1"}, headers=auth(make_account()))

        assert response.status_code == 409
        assert response.json() == {"detail": "Instance name already taken"}

    def test_gateway_failure(self, client, make_account, fake_gateway):
        account_id = make_account()
        fake_gateway.fail.add("create")

        response = client.post("/instance", json={"instanceName": "acct1"}, headers=auth(account_id))

        assert response.status_code == 502
        assert response.json()["detail"].startswith("Failed to create instance")
        assert client.get("/instance", headers=auth(account_id)).json()["phase"] == "NONE"


class TestRefreshAndDisconnect:
    def test_refresh_close(self, client, make_account, fake_gateway):
        account_id = make_account(instance_name="acct1", instance_status="OPEN")
        fake_gateway.state = "close"

        response = client.put("/instance", headers=auth(account_id))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "CLOSE"
        assert data["qrImage"] == "data:image/png;base64,QR2"

    def test_refresh_gateway_down(self, client, make_account, fake_gateway):
        account_id = make_account(instance_name="acct1", instance_status="OPEN")
        fake_gateway.fail.add("connection_state")

        response = client.put("/instance", headers=auth(account_id))

        assert response.status_code == 200
        assert response.json()["status"] == "UNKNOWN"

    def test_refresh_without_instance(self, client, make_account):
        response = client.put("/instance", headers=auth(make_account()))

        assert response.status_code == 404
        assert response.json() == {"detail": "No instance found"}

    def test_disconnect(self, client, make_account, fake_gateway):
        account_id = make_account(instance_name="acct1", instance_status="OPEN")
        fake_gateway.fail.add("logout")

        response = client.delete("/instance", headers=auth(account_id))

        assert response.status_code == 200
        assert response.json()["phase"] == "NONE"
        assert response.json()["instanceName"] is None


class TestSendMessage:
    def test_send(self, client, make_account):
        account_id = make_account(instance_name="acct1", instance_status="OPEN")

        response = client.post(
            "/instance/messages", json={"to": "5551@s.whatsapp.net", "text": "hello"}, headers=auth(account_id)
        )

        assert response.status_code == 200
        assert response.json() == {"id": "SENT1", "timestamp": 1700000000, "status": "PENDING"}

    def test_send_gateway_failure(self, client, make_account, fake_gateway):
        account_id = make_account(instance_name="acct1", instance_status="OPEN")
        fake_gateway.fail.add("send_message")

        response = client.post("/instance/messages", json={"to": "5551", "text": "hello"}, headers=auth(account_id))

        assert response.status_code == 502


class TestHealth:
    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "reason": None}

    def test_metrics_exposed(self, client, make_account, fake_gateway):
        client.get("/health/live")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_requests_total" in response.text
        assert "gateway_requests_total" in response.text
