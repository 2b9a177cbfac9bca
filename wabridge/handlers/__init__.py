"""
MCP Tool Handlers Package

Organized by domain:
- contacts: search_contacts, get_direct_chat_by_contact, get_contact_chats, get_last_interaction
- messages: list_messages, get_message_context
- chats: list_chats, get_chat
- messaging: send_message
"""

from . import contacts
from . import messages
from . import chats
from . import messaging

__all__ = [
    "contacts",
    "messages",
    "chats",
    "messaging",
]
