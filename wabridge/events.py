"""
Inbound protocol events and the event normalizer.

The protocol client emits one of three event kinds:

- ``MessageEvent``: a single live message (incoming or sent from another
  linked device)
- ``HistorySyncEvent``: a backfill batch of conversations, each carrying
  zero or more historical messages
- ``ConnectionStateEvent``: connected / disconnected / logged out

``parse_event`` turns a decoded JSON payload into one of these variants;
``EventNormalizer`` turns message-bearing variants into ``MessageRecord``
values for the ingestion engine. A malformed message is dropped with a
warning so one bad event never stalls the rest of the stream.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from wabridge.errors import MalformedEventError
from wabridge.models import MessageRecord, is_group_jid, parse_timestamp

logger = logging.getLogger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"
LOGGED_OUT = "logged_out"
CONNECTION_STATES = (CONNECTED, DISCONNECTED, LOGGED_OUT)

# Message body keys carrying media, mapped to the stored media_type
MEDIA_KEYS = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "stickerMessage": "sticker",
    "locationMessage": "location",
    "contactMessage": "contact",
}


@dataclass(frozen=True)
class MessageEvent:
    """A single live message."""
    payload: Dict[str, Any]


@dataclass(frozen=True)
class HistorySyncEvent:
    """A historical backfill batch."""
    conversations: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ConnectionStateEvent:
    """A connection lifecycle signal; carries no message data."""
    state: str
    own_jid: Optional[str] = None
    reason: Optional[str] = None


Event = Union[MessageEvent, HistorySyncEvent, ConnectionStateEvent]


def parse_event(payload: Any) -> Event:
    """
    Build an event variant from a decoded protocol payload.

    Expected shapes:
        {"type": "message", "message": {...}}
        {"type": "history_sync", "conversations": [{"jid": ..., "messages": [...]}]}
        {"type": "connection", "state": "connected", "own_jid": "..."}

    Raises:
        MalformedEventError: for unknown types or structurally invalid payloads
    """
    if not isinstance(payload, dict):
        raise MalformedEventError(f"Event must be an object, got {type(payload).__name__}")

    kind = payload.get("type")
    if kind == "message":
        message = payload.get("message")
        if not isinstance(message, dict):
            raise MalformedEventError("message event without a message object")
        return MessageEvent(payload=message)
    elif kind == "history_sync":
        conversations = payload.get("conversations") or []
        if not isinstance(conversations, list):
            raise MalformedEventError("history_sync conversations must be a list")
        return HistorySyncEvent(conversations=conversations)
    elif kind == "connection":
        state = payload.get("state")
        if state not in CONNECTION_STATES:
            raise MalformedEventError(
                f"Invalid connection state: must be one of {list(CONNECTION_STATES)}, got {state!r}"
            )
        return ConnectionStateEvent(
            state=state,
            own_jid=payload.get("own_jid"),
            reason=payload.get("reason"),
        )
    else:
        raise MalformedEventError(f"Unknown event type: {kind!r}")


def extract_text(body: Any) -> str:
    """
    Extract displayable text from a protocol message body.

    Plain conversations and extended text carry the text directly; media
    messages may carry a caption. Anything else yields "".
    """
    if not isinstance(body, dict):
        return ""

    text = body.get("conversation")
    if isinstance(text, str) and text:
        return text

    extended = body.get("extendedTextMessage")
    if isinstance(extended, dict) and isinstance(extended.get("text"), str):
        return extended["text"]

    for key in MEDIA_KEYS:
        media = body.get(key)
        if isinstance(media, dict) and isinstance(media.get("caption"), str):
            return media["caption"]

    return ""


def detect_media_type(body: Any) -> Optional[str]:
    """Return the media type of a protocol message body, if any."""
    if not isinstance(body, dict):
        return None
    for key, media_type in MEDIA_KEYS.items():
        if isinstance(body.get(key), dict):
            return media_type
    return None


def _first_str(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_text(data: Dict[str, Any], *keys: str) -> Optional[str]:
    # Like _first_str, but message text keeps its whitespace
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


class EventNormalizer:
    """
    Converts protocol events into canonical message records.

    Args:
        own_jid: The local identity's JID, used as sender for outgoing
            history messages that do not name one.
    """

    def __init__(self, own_jid: Optional[str] = None):
        self.own_jid = own_jid
        self.discarded = 0

    def _build_record(
        self,
        raw: Any,
        chat_jid: Optional[str] = None,
        chat_name: Optional[str] = None,
    ) -> MessageRecord:
        if not isinstance(raw, dict):
            raise MalformedEventError(f"Message must be an object, got {type(raw).__name__}")

        chat_jid = _first_str(raw, "chat_jid", "chat") or chat_jid
        if not chat_jid:
            raise MalformedEventError("Missing chat key")

        message_id = raw.get("id")
        if isinstance(message_id, int) and not isinstance(message_id, bool):
            message_id = str(message_id)
        if not isinstance(message_id, str) or not message_id.strip():
            raise MalformedEventError(f"Missing message id in chat {chat_jid}")
        message_id = message_id.strip()

        if raw.get("timestamp") is None:
            raise MalformedEventError(f"Missing timestamp for message {message_id} in {chat_jid}")
        try:
            timestamp = parse_timestamp(raw["timestamp"])
        except ValueError as e:
            raise MalformedEventError(str(e)) from e

        is_from_me = bool(raw.get("is_from_me", raw.get("from_me", False)))

        sender = _first_str(raw, "sender", "participant")
        if not sender:
            if is_from_me and self.own_jid:
                sender = self.own_jid
            elif not is_group_jid(chat_jid):
                sender = chat_jid
            else:
                sender = ""

        body = raw.get("body")
        content = _first_text(raw, "content", "text") or extract_text(body)

        media_type = _first_str(raw, "media_type") or detect_media_type(body)

        name = _first_str(raw, "chat_name") or chat_name
        if not name and not is_from_me and not is_group_jid(chat_jid):
            # Push names only describe the remote party of a direct chat
            name = _first_str(raw, "push_name")

        return MessageRecord(
            chat_jid=chat_jid,
            id=message_id,
            sender=sender,
            timestamp=timestamp,
            content=content or "",
            is_from_me=is_from_me,
            media_type=media_type,
            chat_name=name,
        )

    def normalize_message(self, event: MessageEvent) -> Optional[MessageRecord]:
        """Normalize a live message; returns None if the event is malformed."""
        try:
            return self._build_record(event.payload)
        except MalformedEventError as e:
            self.discarded += 1
            logger.warning(f"Discarding malformed message event: {e}")
            return None

    def normalize_history(self, event: HistorySyncEvent) -> List[MessageRecord]:
        """
        Normalize every message of a backfill batch.

        Malformed conversations or messages are skipped individually.
        """
        records = []
        for conversation in event.conversations:
            if not isinstance(conversation, dict):
                self.discarded += 1
                logger.warning("Discarding malformed history conversation: not an object")
                continue

            chat_jid = _first_str(conversation, "jid", "id", "chat_jid")
            chat_name = _first_str(conversation, "name", "display_name")
            messages = conversation.get("messages") or []
            if not isinstance(messages, list):
                self.discarded += 1
                logger.warning(f"Discarding history conversation {chat_jid}: messages is not a list")
                continue

            for raw in messages:
                try:
                    records.append(self._build_record(raw, chat_jid=chat_jid, chat_name=chat_name))
                except MalformedEventError as e:
                    self.discarded += 1
                    logger.warning(f"Discarding malformed history message: {e}")

        return records

    def observe_connection(self, event: ConnectionStateEvent) -> None:
        """Track the local identity announced on connect."""
        if event.state == CONNECTED and event.own_jid:
            self.own_jid = event.own_jid
