"""
Response formatting utilities for MCP tool handlers.

Provides standardized response builders for common scenarios.
"""

import json
from typing import Any, Dict, List, Optional

from mcp import types

from wabridge.models import Message, MessageContext

DISPLAY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def text_response(text: str) -> list[types.TextContent]:
    """Create a simple text response."""
    return [types.TextContent(type="text", text=text)]


def json_response(data: Any) -> list[types.TextContent]:
    """Create a JSON text response for structured records."""
    return [types.TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def error_response(error: str, prefix: str = "Error") -> list[types.TextContent]:
    """
    Create a standardized error response.

    Args:
        error: Error message
        prefix: Prefix for the error (default: "Error")
    """
    return [types.TextContent(type="text", text=f"{prefix}: {error}")]


def validation_error(error: str) -> list[types.TextContent]:
    """Create a validation error response."""
    return error_response(error, "Validation error")


def empty_result(
    item_type: str,
    filter_text: str = "",
    hint: Optional[str] = None
) -> list[types.TextContent]:
    """
    Create an empty result response.

    Args:
        item_type: Type of items being searched (e.g., "messages", "chats")
        filter_text: Additional filter description (e.g., " in this chat")
        hint: Optional helpful hint
    """
    message = f"No {item_type} found{filter_text}."
    if hint:
        message += f"\n\nNote: {hint}"
    return [types.TextContent(type="text", text=message)]


def format_message(
    msg: Message,
    sender_names: Optional[Dict[str, str]] = None,
    show_chat: bool = True,
) -> str:
    """
    Format one message as a single display line.

    [2026-01-05 09:00:00] Chat: Family From: Jane: [Message ID: 3EAF - Chat JID: 1203@g.us] see you soon
    [2026-01-05 09:01:00] Chat: Family From: Me: [image - Message ID: 3EB0 - Chat JID: 1203@g.us] look
    """
    date = msg.timestamp.strftime(DISPLAY_TIME_FORMAT) if msg.timestamp else "Unknown date"

    if msg.is_from_me:
        sender = "Me"
    else:
        sender = (sender_names or {}).get(msg.sender) or msg.sender or "Unknown"

    parts = [f"[{date}]"]
    if show_chat:
        parts.append(f"Chat: {msg.chat_name or msg.chat_jid}")
    parts.append(f"From: {sender}:")

    ids = f"Message ID: {msg.id} - Chat JID: {msg.chat_jid}"
    if msg.media_type:
        parts.append(f"[{msg.media_type} - {ids}]")
    else:
        parts.append(f"[{ids}]")

    line = " ".join(parts)
    if msg.content:
        line += f" {msg.content}"
    return line


def format_message_list(
    results: List[MessageContext],
    sender_names: Optional[Dict[str, str]] = None,
) -> str:
    """
    Format list_messages results.

    Results carrying context render as blocks: earlier messages, the
    matching message marked with ">", later messages.
    """
    if not results:
        return "No messages to display."

    with_context = any(r.before or r.after for r in results)
    lines = []
    for result in results:
        if not with_context:
            lines.append(format_message(result.message, sender_names))
            continue
        for msg in result.before:
            lines.append(f"  {format_message(msg, sender_names)}")
        lines.append(f"> {format_message(result.message, sender_names)}")
        for msg in result.after:
            lines.append(f"  {format_message(msg, sender_names)}")
        lines.append("---")

    return "\n".join(lines)
