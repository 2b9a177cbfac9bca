"""
Outbound dispatcher: logical send request -> protocol client call.

Only syntactic recipient normalization happens here; deliverability is
whatever the protocol client reports. Sends are never retried because they
are not idempotent.
"""

import logging

from wabridge.errors import DispatchError, ValidationError
from wabridge.models import INDIVIDUAL_SUFFIX, JID_MARKER, SendResult
from wabridge.protocol import Session

logger = logging.getLogger(__name__)

# Formatting characters people type into phone numbers
PHONE_FORMATTING = " -().\t"


def normalize_recipient(recipient: str, suffix: str = INDIVIDUAL_SUFFIX) -> str:
    """
    Turn a recipient into a fully-qualified destination.

    "15551234567"                 -> "15551234567@s.whatsapp.net"
    "+1 (555) 123-4567"           -> "15551234567@s.whatsapp.net"
    "15551234567@s.whatsapp.net"  -> unchanged
    "120363025@g.us"              -> unchanged

    Raises:
        ValidationError: for empty recipients or bare identifiers that are
            not phone numbers
    """
    if not isinstance(recipient, str) or not recipient.strip():
        raise ValidationError("Invalid recipient: cannot be empty")

    value = recipient.strip()
    if JID_MARKER in value:
        user, _, domain = value.partition(JID_MARKER)
        if not user or not domain:
            raise ValidationError(f"Invalid recipient: malformed address {recipient!r}")
        return value

    digits = value
    for ch in PHONE_FORMATTING:
        digits = digits.replace(ch, "")
    digits = digits.lstrip("+")
    if not digits.isdigit():
        raise ValidationError(
            f"Invalid recipient: expected a phone number with country code or a full address, got {recipient!r}"
        )
    return f"{digits}{suffix}"


class OutboundDispatcher:
    """Sends text messages through the protocol session."""

    def __init__(self, session: Session, suffix: str = INDIVIDUAL_SUFFIX):
        self.session = session
        self.suffix = suffix

    def send(self, recipient: str, text: str) -> SendResult:
        """
        Send text to a recipient.

        Never raises: every failure (invalid recipient, timeout, transport
        error, protocol rejection) comes back as SendResult(success=False).
        """
        try:
            destination = normalize_recipient(recipient, self.suffix)
        except ValidationError as e:
            return SendResult(success=False, message=str(e))

        if not isinstance(text, str) or not text.strip():
            return SendResult(success=False, message="Invalid message: cannot be empty", destination=destination)

        try:
            ok, detail = self.session.send(destination, text)
            if not ok:
                raise DispatchError(detail)
        except DispatchError as e:
            logger.error(f"Send to {destination} rejected: {e}")
            return SendResult(success=False, message=f"Failed to send message: {e}", destination=destination)
        except TimeoutError as e:
            logger.error(f"Send to {destination} timed out: {e}")
            return SendResult(
                success=False,
                message=f"Failed to send message: timed out after {self.session.send_timeout_s}s",
                destination=destination,
            )
        except OSError as e:
            logger.error(f"Protocol client unreachable for send to {destination}: {e}")
            return SendResult(
                success=False,
                message=f"Failed to send message: protocol client unreachable ({e})",
                destination=destination,
            )
        except Exception as e:
            logger.error(f"Exception sending message to {destination}: {e}", exc_info=True)
            return SendResult(success=False, message=f"Failed to send message: {e}", destination=destination)

        logger.info(f"Message sent successfully to {destination}")
        return SendResult(success=True, message=f"Message sent to {destination}", destination=destination)
