"""
Normalization of gateway webhook events into canonical message records.

Everything here is a pure function of its input: no I/O, no clock, no
database. The webhook route resolves the owning account and persistence
happens elsewhere.
"""

import enum
import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field

from wa_inbox.schemas import MessageContent, WebhookData, WebhookEvent

logger = logging.getLogger(__name__)


MESSAGES_UPSERT_EVENTS = frozenset({"messages.upsert", "MESSAGES_UPSERT"})

# Timestamps below this are seconds since the epoch, above it milliseconds
SECONDS_TIMESTAMP_LIMIT = 10_000_000_000

UNKNOWN_SENDER = "unknown"
DEFAULT_INSTANCE = "default"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    STICKER = "STICKER"
    LOCATION = "LOCATION"
    CONTACT = "CONTACT"


class Direction(str, enum.Enum):
    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"


# =============================================================================
# Message Body Variants
# =============================================================================

class TextBody(BaseModel, frozen=True):
    kind: Literal[MessageType.TEXT] = MessageType.TEXT
    text: Optional[str] = None


class ImageBody(BaseModel, frozen=True):
    kind: Literal[MessageType.IMAGE] = MessageType.IMAGE
    caption: Optional[str] = None


class VideoBody(BaseModel, frozen=True):
    kind: Literal[MessageType.VIDEO] = MessageType.VIDEO
    caption: Optional[str] = None


class AudioBody(BaseModel, frozen=True):
    kind: Literal[MessageType.AUDIO] = MessageType.AUDIO


class DocumentBody(BaseModel, frozen=True):
    kind: Literal[MessageType.DOCUMENT] = MessageType.DOCUMENT
    title: Optional[str] = None
    caption: Optional[str] = None


class StickerBody(BaseModel, frozen=True):
    kind: Literal[MessageType.STICKER] = MessageType.STICKER


class LocationBody(BaseModel, frozen=True):
    kind: Literal[MessageType.LOCATION] = MessageType.LOCATION
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ContactBody(BaseModel, frozen=True):
    kind: Literal[MessageType.CONTACT] = MessageType.CONTACT
    display_name: Optional[str] = None


MessageBody = Annotated[
    Union[
        TextBody,
        ImageBody,
        VideoBody,
        AudioBody,
        DocumentBody,
        StickerBody,
        LocationBody,
        ContactBody,
    ],
    Field(discriminator="kind"),
]


class CanonicalMessage(BaseModel):
    """
    Normalized representation of one chat event.

    body holds the classified variant with its typed fields; message_type
    is read off it. owner_id is filled in by the webhook route once the
    owning account is known; the normalizer always leaves it empty.
    """
    external_id: str
    content: Optional[str] = None
    sender_display_name: Optional[str] = None
    sender_address: str = UNKNOWN_SENDER
    instance_name: str = DEFAULT_INSTANCE
    body: MessageBody = Field(default_factory=TextBody)
    direction: Direction = Direction.INCOMING
    created_at: Optional[int] = Field(None, description="Epoch milliseconds, None means ingestion time")
    owner_id: Optional[str] = None

    @computed_field
    @property
    def message_type(self) -> MessageType:
        return self.body.kind


# =============================================================================
# Extraction Functions
# =============================================================================

def is_messages_upsert_event(event: Optional[str]) -> bool:
    return event in MESSAGES_UPSERT_EVENTS


def classify(message: Optional[MessageContent]) -> MessageBody:
    """
    Build the body variant for a message sub-object.

    Checked in fixed priority order, first populated field wins:
    image, video, audio, document, sticker, location, contact, text.
    """
    if message is None:
        return TextBody()

    if message.image_message is not None:
        return ImageBody(caption=message.image_message.caption)
    if message.video_message is not None:
        return VideoBody(caption=message.video_message.caption)
    if message.audio_message is not None:
        return AudioBody()
    if message.document_message is not None:
        doc = message.document_message
        return DocumentBody(title=doc.title, caption=doc.caption)
    if message.sticker_message is not None:
        return StickerBody()
    if message.location_message is not None:
        loc = message.location_message
        return LocationBody(name=loc.name, latitude=loc.degrees_latitude, longitude=loc.degrees_longitude)
    if message.contact_message is not None:
        return ContactBody(display_name=message.contact_message.display_name)

    text = message.conversation
    if not text and message.extended_text_message is not None:
        text = message.extended_text_message.text
    return TextBody(text=text)


def _format_coordinate(value: Optional[float]) -> str:
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def extract_content(message: Optional[MessageContent]) -> Optional[str]:
    """
    Human-readable body of a message, or None.

    Text wins over media: a payload with both a conversation and an image
    yields the conversation text even though it classifies as IMAGE.
    """
    if message is None:
        return None

    if message.conversation:
        return message.conversation
    if message.extended_text_message is not None and message.extended_text_message.text:
        return message.extended_text_message.text

    if message.image_message is not None and message.image_message.caption:
        return f"[IMAGE] {message.image_message.caption}"
    if message.video_message is not None and message.video_message.caption:
        return f"[VIDEO] {message.video_message.caption}"
    if message.document_message is not None:
        title = message.document_message.title or "Document"
        caption = message.document_message.caption
        return f"[DOCUMENT] {title}: {caption}" if caption else f"[DOCUMENT] {title}"

    if message.audio_message is not None:
        return "[AUDIO]"
    if message.sticker_message is not None:
        return "[STICKER]"
    if message.location_message is not None:
        loc = message.location_message
        coords = f"({_format_coordinate(loc.degrees_latitude)}, {_format_coordinate(loc.degrees_longitude)})"
        return f"[LOCATION] {loc.name} {coords}" if loc.name else f"[LOCATION] {coords}"
    if message.contact_message is not None:
        return f"[CONTACT] {message.contact_message.display_name or ''}".rstrip()

    return None


def get_direction(data: WebhookData) -> Direction:
    if data.key is not None and data.key.from_me:
        return Direction.OUTGOING
    return Direction.INCOMING


def get_sender_address(data: WebhookData) -> str:
    if data.key is not None and data.key.remote_jid:
        return data.key.remote_jid
    return UNKNOWN_SENDER


def get_sender_display_name(data: WebhookData) -> Optional[str]:
    # Own messages carry no display name; clients render them as "me"
    if get_direction(data) is Direction.OUTGOING:
        return None
    return data.push_name or None


def get_instance_name(instance: Optional[str]) -> str:
    return instance or DEFAULT_INSTANCE


def normalize_timestamp(timestamp: Optional[float]) -> Optional[int]:
    """
    Convert a gateway message timestamp to epoch milliseconds.

    Values below 10_000_000_000 are seconds and get multiplied by 1000;
    anything at or above that is already milliseconds.
    """
    if not timestamp:
        return None
    if timestamp < SECONDS_TIMESTAMP_LIMIT:
        return int(timestamp * 1000)
    return int(timestamp)


def normalize(event: WebhookEvent) -> Optional[CanonicalMessage]:
    """
    Turn a gateway event into a CanonicalMessage.

    Returns None for anything other than a message upsert, for payloads
    whose data is not a message object, and for messages without an id.
    """
    if not is_messages_upsert_event(event.event):
        return None

    if not isinstance(event.data, dict):
        return None
    data = WebhookData.model_validate(event.data)

    if data.key is None or not data.key.id:
        return None

    body = classify(data.message)
    created_at = normalize_timestamp(data.message_timestamp)
    logger.debug(f"messageTimestamp {data.message_timestamp} -> created_at {created_at}")

    return CanonicalMessage(
        external_id=data.key.id,
        content=extract_content(data.message),
        sender_display_name=get_sender_display_name(data),
        sender_address=get_sender_address(data),
        instance_name=get_instance_name(event.instance),
        body=body,
        direction=get_direction(data),
        created_at=created_at,
    )
