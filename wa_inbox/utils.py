"""
Utility functions for the inbox service.
"""

import hmac
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_JID_SUFFIX = re.compile(r"@(s\.whatsapp\.net|g\.us)$")


def verify_shared_secret(provided: Optional[str], expected: str) -> bool:
    """
    Check the X-Webhook-Secret header sent back by the gateway.

    Args:
        provided: Header value from the request, None if absent
        expected: WEBHOOK_SECRET

    Returns:
        True if both are non-empty and equal, False otherwise
    """
    if not provided or not expected:
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
    logger.debug(f"Webhook secret verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def sanitize_phone_number(address: str) -> str:
    """Strip the JID suffix (@s.whatsapp.net, @g.us) and a leading '+'."""
    sanitized = _JID_SUFFIX.sub("", address)
    return sanitized[1:] if sanitized.startswith("+") else sanitized


def format_display_name(name: Optional[str], address: str) -> str:
    """Push name when known, otherwise the bare number."""
    if name:
        return name
    return sanitize_phone_number(address)


def normalize_recipient(to: str) -> str:
    """
    Recipient as the gateway expects it.

    Direct chats drop the @s.whatsapp.net suffix and a leading '+'. Group
    JIDs (@g.us) pass through unchanged since the bare id is not routable.
    """
    if to.endswith("@g.us"):
        return to
    return sanitize_phone_number(to)
