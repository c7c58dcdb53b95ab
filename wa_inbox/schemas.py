"""
Pydantic schemas for request/response validation.

This module contains:
- Gateway webhook payload models (Evolution API v2 shape)
- Request models for the instance endpoints
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Gateway Webhook Payload Models
# =============================================================================

class GatewayModel(BaseModel):
    """Base for gateway payload fragments: camelCase aliases, unknown keys ignored."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class MessageKey(GatewayModel):
    id: Optional[str] = None
    remote_jid: Optional[str] = Field(None, alias="remoteJid")
    from_me: bool = Field(False, alias="fromMe")


class ExtendedTextMessage(GatewayModel):
    text: Optional[str] = None


class ImageMessage(GatewayModel):
    caption: Optional[str] = None


class VideoMessage(GatewayModel):
    caption: Optional[str] = None


class AudioMessage(GatewayModel):
    pass


class DocumentMessage(GatewayModel):
    caption: Optional[str] = None
    title: Optional[str] = None


class StickerMessage(GatewayModel):
    pass


class LocationMessage(GatewayModel):
    degrees_latitude: Optional[float] = Field(None, alias="degreesLatitude")
    degrees_longitude: Optional[float] = Field(None, alias="degreesLongitude")
    name: Optional[str] = None


class ContactMessage(GatewayModel):
    display_name: Optional[str] = Field(None, alias="displayName")


class MessageContent(GatewayModel):
    """
    The message sub-object of an upsert event.

    Usually only one field is populated, but some payloads carry several
    (e.g. a conversation text next to a media stub).
    """
    conversation: Optional[str] = None
    extended_text_message: Optional[ExtendedTextMessage] = Field(None, alias="extendedTextMessage")
    image_message: Optional[ImageMessage] = Field(None, alias="imageMessage")
    video_message: Optional[VideoMessage] = Field(None, alias="videoMessage")
    audio_message: Optional[AudioMessage] = Field(None, alias="audioMessage")
    document_message: Optional[DocumentMessage] = Field(None, alias="documentMessage")
    sticker_message: Optional[StickerMessage] = Field(None, alias="stickerMessage")
    location_message: Optional[LocationMessage] = Field(None, alias="locationMessage")
    contact_message: Optional[ContactMessage] = Field(None, alias="contactMessage")


class WebhookData(GatewayModel):
    key: Optional[MessageKey] = None
    message: Optional[MessageContent] = None
    push_name: Optional[str] = Field(None, alias="pushName")
    message_timestamp: Optional[float] = Field(None, alias="messageTimestamp")


class WebhookEvent(GatewayModel):
    """
    Envelope of every gateway callback.

    `data` stays untyped here: its shape depends on the event kind and is
    only validated as WebhookData for message events.
    """
    event: Optional[str] = None
    instance: Optional[str] = None
    data: Any = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "event": "messages.upsert",
                    "instance": "acct1",
                    "data": {
                        "key": {"id": "MSG1", "remoteJid": "5551@s.whatsapp.net", "fromMe": False},
                        "message": {"conversation": "hi"},
                        "pushName": "Ana",
                        "messageTimestamp": 1700000000,
                    },
                }
            ]
        }
    }


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateInstanceRequest(BaseModel):
    instance_name: str = Field(
        ...,
        alias="instanceName",
        min_length=1,
        description="Globally unique name for the new connection instance"
    )

    model_config = {"populate_by_name": True}


class SendMessageRequest(BaseModel):
    to: str = Field(..., min_length=1, description="Recipient number or JID")
    text: str = Field(..., min_length=1, max_length=4096, description="Message text")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway for every handled callback."""
    received: bool = True
    status: str = Field(..., description="no_user, ignored, no_data, duplicate or processing")
    instance: Optional[str] = None
    external_id: Optional[str] = Field(None, serialization_alias="externalId")
    owner_id: Optional[str] = Field(None, serialization_alias="ownerId")


class LivenessResponse(BaseModel):
    status: str = "online"
    timestamp: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class InstanceStateResponse(BaseModel):
    """Instance fields of the caller's account."""
    account_id: str = Field(..., serialization_alias="accountId")
    instance_name: Optional[str] = Field(None, serialization_alias="instanceName")
    status: Optional[str] = None
    phase: str
    qr_image: Optional[str] = Field(None, serialization_alias="qrImage")
    pairing_code: Optional[str] = Field(None, serialization_alias="pairingCode")


class SendMessageResponse(BaseModel):
    id: Optional[str] = None
    timestamp: Optional[int] = None
    status: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
