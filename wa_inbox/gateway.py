"""Evolution API v2 instance-management client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from wa_inbox.metrics import record_gateway_call

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = ["MESSAGES_UPSERT"]


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    api_key: str
    timeout_seconds: float = 15.0


class GatewayError(Exception):
    """A gateway call failed: non-2xx response, timeout or transport error.

    status_code is the upstream HTTP status, or None when no response
    was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class QrCode(BaseModel):
    image: Optional[str] = None
    pairing_code: Optional[str] = None


class CreateInstanceResult(BaseModel):
    status: Optional[str] = None
    qr: Optional[QrCode] = None


class QrArtifacts(BaseModel):
    image: Optional[str] = None
    code: Optional[str] = None


class ConnectionState(BaseModel):
    state: str


class SendTextRequest(BaseModel):
    to: str
    text: str


class SendResult(BaseModel):
    id: Optional[str] = None
    timestamp: Optional[int] = None
    status: Optional[str] = None


class EvolutionClient:
    """HTTP client for the Evolution API instance and message endpoints.

    Every call is a single request with the configured timeout; retrying
    is left to the caller.
    """

    def __init__(
        self,
        config: GatewayConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self.headers = {"apikey": config.api_key, "Accept": "application/json"}
        self.transport = transport

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: dict | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, json=json, headers=self.headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            record_gateway_call(operation, "http_error")
            logger.error(
                "Gateway HTTP error on %s: %s - %s",
                operation,
                exc.response.status_code,
                exc.response.text,
            )
            raise GatewayError(
                f"{operation} failed: {exc.response.status_code} - {exc.response.text}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            record_gateway_call(operation, "request_error")
            logger.error("Gateway request error on %s: %s", operation, exc)
            raise GatewayError(f"{operation} failed: {exc}") from exc

        record_gateway_call(operation, "ok")
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                f"{operation} returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            logger.error("Gateway returned non-object payload on %s", operation)
            raise GatewayError(
                f"{operation} returned unexpected payload",
                status_code=response.status_code,
            )
        return data

    def create(self, instance_name: str) -> CreateInstanceResult:
        data = self._request(
            "create",
            "POST",
            "/instance/create",
            json={
                "instanceName": instance_name,
                "qrcode": True,
                "integration": "WHATSAPP-BAILEYS",
            },
        )
        instance = data.get("instance") or {}
        qrcode = data.get("qrcode")
        qr = None
        if qrcode:
            qr = QrCode(
                image=qrcode.get("base64"),
                pairing_code=qrcode.get("pairingCode") or qrcode.get("code"),
            )
        return CreateInstanceResult(status=instance.get("status"), qr=qr)

    def fetch_qr(self, instance_name: str) -> QrArtifacts:
        data = self._request("fetch_qr", "GET", f"/instance/connect/{instance_name}")
        return QrArtifacts(image=data.get("base64"), code=data.get("code"))

    def connection_state(self, instance_name: str) -> ConnectionState:
        data = self._request(
            "connection_state", "GET", f"/instance/connectionState/{instance_name}"
        )
        # v2 nests the state under "instance", older builds return it flat
        state = data.get("state")
        if state is None and isinstance(data.get("instance"), dict):
            state = data["instance"].get("state")
        if state is None:
            raise GatewayError("connection_state response carries no state")
        return ConnectionState(state=state)

    def set_webhook(
        self,
        instance_name: str,
        callback_url: str,
        headers: dict[str, str] | None = None,
    ) -> dict:
        webhook: dict[str, Any] = {
            "enabled": True,
            "url": callback_url,
            "webhook_by_events": False,
            "events": WEBHOOK_EVENTS,
        }
        if headers:
            webhook["headers"] = headers
        return self._request(
            "set_webhook", "POST", f"/webhook/set/{instance_name}", json={"webhook": webhook}
        )

    def logout(self, instance_name: str) -> None:
        self._request("logout", "DELETE", f"/instance/logout/{instance_name}")

    def delete(self, instance_name: str) -> None:
        self._request("delete", "DELETE", f"/instance/delete/{instance_name}")

    def send_message(self, instance_name: str, message: SendTextRequest) -> SendResult:
        data = self._request(
            "send_message",
            "POST",
            f"/message/sendText/{instance_name}",
            json={
                "number": message.to,
                "text": message.text,
                "delay": 0,
                "linkPreview": False,
            },
        )
        key = data.get("key") or {}
        timestamp = data.get("messageTimestamp")
        return SendResult(
            id=key.get("id"),
            timestamp=int(timestamp) if timestamp is not None else None,
            status=data.get("status"),
        )
