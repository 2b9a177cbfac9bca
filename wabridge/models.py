"""
Data models for the WhatsApp bridge.

Defines the persisted entities (chats, messages), the derived contact
projection, and the canonical record shape handed from the event
normalizer to the ingestion engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

INDIVIDUAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"
JID_MARKER = "@"

# Fixed-width UTC text so lexical order in SQLite equals temporal order
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

# Epoch values above this are treated as milliseconds
_EPOCH_MS_THRESHOLD = 10 ** 11

# TIMESTAMP_FORMAT stays fixed-width only for four-digit years
MIN_YEAR = 1000
MAX_YEAR = 9999


def is_group_jid(jid: Optional[str]) -> bool:
    """Check if a chat key identifies a group conversation."""
    return bool(jid) and jid.endswith(GROUP_SUFFIX)


def phone_from_jid(jid: Optional[str]) -> str:
    """
    Extract the phone-like portion of a JID.

    "15551234567:12@s.whatsapp.net" -> "15551234567"
    "+15551234567" -> "15551234567"
    """
    if not jid:
        return ""
    user = jid.split(JID_MARKER, 1)[0]
    user = user.split(":", 1)[0]
    return user.lstrip("+")


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a timestamp into an aware UTC datetime.

    Accepts datetimes (naive values are taken as UTC), epoch seconds or
    milliseconds as int/float/numeric string, ISO 8601 strings and the
    store's own text format.

    Raises:
        ValueError: if the value cannot be interpreted as a point in time,
            or falls outside years MIN_YEAR..MAX_YEAR
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, datetime):
        if value.tzinfo is None:
            result = value.replace(tzinfo=timezone.utc)
        else:
            try:
                result = value.astimezone(timezone.utc)
            except OverflowError as e:
                raise ValueError(f"Invalid timestamp: {value!r}") from e
        if not MIN_YEAR <= result.year <= MAX_YEAR:
            raise ValueError(f"Timestamp out of range: {value!r}")
        return result

    if isinstance(value, (int, float)):
        seconds = float(value)
        if abs(seconds) > _EPOCH_MS_THRESHOLD:
            seconds = seconds / 1000.0
        try:
            result = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e
        return parse_timestamp(result)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Invalid timestamp: empty string")
        try:
            return parse_timestamp(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e

    raise ValueError(f"Invalid timestamp type: {type(value).__name__}")


def format_timestamp(dt: datetime) -> str:
    """Render a datetime in the store's fixed-width UTC text format."""
    return parse_timestamp(dt).strftime(TIMESTAMP_FORMAT)


def _parse_stored(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse datetime string from database"""
    if dt_str:
        try:
            return datetime.strptime(dt_str, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except (ValueError, TypeError):
            return None
    return None


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


@dataclass(frozen=True)
class MessageRecord:
    """Canonical message shape produced by the event normalizer."""
    chat_jid: str
    id: str
    sender: str
    timestamp: datetime
    content: str = ""
    is_from_me: bool = False
    media_type: Optional[str] = None
    chat_name: Optional[str] = None

    @property
    def key(self) -> tuple:
        """Composite identity of the message."""
        return (self.id, self.chat_jid)


@dataclass
class Message:
    """Persisted message row."""
    id: str
    chat_jid: str
    sender: str
    content: str
    timestamp: datetime
    is_from_me: bool = False
    media_type: Optional[str] = None
    chat_name: Optional[str] = None

    @classmethod
    def from_row(cls, data: Dict[str, Any]) -> 'Message':
        """Create Message from database row dictionary"""
        return cls(
            id=data['id'],
            chat_jid=data['chat_jid'],
            sender=data.get('sender') or "",
            content=data.get('content') or "",
            timestamp=_parse_stored(data.get('timestamp')),
            is_from_me=bool(data.get('is_from_me', False)),
            media_type=data.get('media_type'),
            chat_name=data.get('chat_name'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chat_jid": self.chat_jid,
            "chat_name": self.chat_name,
            "sender": self.sender,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
            "is_from_me": self.is_from_me,
            "media_type": self.media_type,
        }


@dataclass
class Chat:
    """Persisted chat row, optionally carrying its most recent message."""
    jid: str
    name: Optional[str] = None
    last_message_time: Optional[datetime] = None
    last_message: Optional[Message] = None

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.jid)

    @classmethod
    def from_row(cls, data: Dict[str, Any]) -> 'Chat':
        """Create Chat from database row dictionary"""
        last_message = None
        if data.get('last_message_id'):
            last_message = Message(
                id=data['last_message_id'],
                chat_jid=data['jid'],
                sender=data.get('last_sender') or "",
                content=data.get('last_content') or "",
                timestamp=_parse_stored(data.get('last_timestamp')),
                is_from_me=bool(data.get('last_is_from_me', False)),
                media_type=data.get('last_media_type'),
                chat_name=data.get('name'),
            )
        return cls(
            jid=data['jid'],
            name=data.get('name'),
            last_message_time=_parse_stored(data.get('last_message_time')),
            last_message=last_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "jid": self.jid,
            "name": self.name,
            "is_group": self.is_group,
            "last_message_time": _iso(self.last_message_time),
        }
        if self.last_message is not None:
            result["last_message"] = self.last_message.to_dict()
        return result


@dataclass
class Contact:
    """Contact projection derived from chats and message senders."""
    phone_number: str
    name: Optional[str]
    jid: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phone_number": self.phone_number,
            "name": self.name,
            "jid": self.jid,
        }


@dataclass
class MessageContext:
    """A target message with its surrounding messages in the same chat."""
    message: Message
    before: List[Message] = field(default_factory=list)
    after: List[Message] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.message.to_dict(),
            "before": [m.to_dict() for m in self.before],
            "after": [m.to_dict() for m in self.after],
        }


@dataclass
class SendResult:
    """Outcome of an outbound send."""
    success: bool
    message: str
    destination: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}
