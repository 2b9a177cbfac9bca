#!/usr/bin/env python3
"""
WhatsApp Bridge MCP Server - query the local message store and send messages.

Reads go straight to the SQLite store the bridge daemon maintains; sends go
through the protocol client's socket.

Usage:
    wabridge-mcp
    python -m wabridge.server
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp import types

from wabridge.config import load_config, resolve_path, setup_logging
from wabridge.dispatcher import OutboundDispatcher
from wabridge.handlers import chats, contacts, messages, messaging
from wabridge.protocol import Session, SocketProtocolClient
from wabridge.queries import QueryEngine
from wabridge.store import MessageStore

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything the tool handlers need, built once per process."""
    config: dict
    store: MessageStore
    queries: QueryEngine
    session: Session
    dispatcher: OutboundDispatcher

    def close(self) -> None:
        self.session.close()


def build_components(config: dict) -> Components:
    """Wire store, query engine and protocol session from configuration."""
    store = MessageStore(
        resolve_path(config["paths"]["store_db"]),
        busy_timeout_ms=config["store"]["busy_timeout_ms"],
    )
    queries = QueryEngine(
        store,
        max_limit=config["limits"]["max_message_limit"],
        max_context=config["limits"]["max_context_window"],
        max_search=config["limits"]["max_search_results"],
        read_retries=config["store"]["read_retries"],
    )
    client = SocketProtocolClient(resolve_path(config["protocol"]["socket"]))
    session = Session(client, send_timeout_s=config["protocol"]["send_timeout_s"])
    dispatcher = OutboundDispatcher(session, suffix=config["protocol"]["individual_suffix"])
    return Components(
        config=config,
        store=store,
        queries=queries,
        session=session,
        dispatcher=dispatcher,
    )


_components: Optional[Components] = None


def get_components() -> Components:
    """Process-wide components; built from config on first use."""
    global _components
    if _components is None:
        _components = build_components(load_config())
    return _components


def set_components(components: Optional[Components]) -> None:
    global _components
    _components = components


# Tool name -> (handler module function, component attribute it takes)
TOOL_HANDLERS = {
    "search_contacts": (contacts.handle_search_contacts, "queries"),
    "get_direct_chat_by_contact": (contacts.handle_get_direct_chat_by_contact, "queries"),
    "get_contact_chats": (contacts.handle_get_contact_chats, "queries"),
    "get_last_interaction": (contacts.handle_get_last_interaction, "queries"),
    "list_messages": (messages.handle_list_messages, "queries"),
    "get_message_context": (messages.handle_get_message_context, "queries"),
    "list_chats": (chats.handle_list_chats, "queries"),
    "get_chat": (chats.handle_get_chat, "queries"),
    "send_message": (messaging.handle_send_message, "dispatcher"),
}


def _pagination_properties(default_limit: int = 20) -> dict:
    return {
        "limit": {
            "type": "number",
            "description": f"Maximum number of results per page (default: {default_limit})",
            "default": default_limit
        },
        "page": {
            "type": "number",
            "description": "Zero-based page index; page 0 is the most recent (default: 0)",
            "default": 0
        },
    }


TOOLS = [
    types.Tool(
        name="search_contacts",
        description=(
            "Search WhatsApp contacts by name or phone number. "
            "Contacts are derived from chats and message senders in the local store."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Name or phone number fragment (case-insensitive)"
                },
                "limit": {
                    "type": "number",
                    "description": "Maximum number of contacts (default: 50)",
                    "default": 50
                }
            },
            "required": ["query"]
        }
    ),
    types.Tool(
        name="list_messages",
        description=(
            "List WhatsApp messages, newest first, filtered by time range, sender, "
            "chat and text. Each result can include surrounding messages from the same chat."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "after": {
                    "type": "string",
                    "description": "Only messages at or after this ISO 8601 date/time"
                },
                "before": {
                    "type": "string",
                    "description": "Only messages at or before this ISO 8601 date/time"
                },
                "sender_phone_number": {
                    "type": "string",
                    "description": "Sender phone number or JID"
                },
                "chat_jid": {
                    "type": "string",
                    "description": "Chat JID to restrict to"
                },
                "query": {
                    "type": "string",
                    "description": "Text to search for in message content"
                },
                **_pagination_properties(20),
                "include_context": {
                    "type": "boolean",
                    "description": "Include messages before and after each match (default: true)",
                    "default": True
                },
                "context_before": {
                    "type": "number",
                    "description": "Messages to include before each match (default: 1)",
                    "default": 1
                },
                "context_after": {
                    "type": "number",
                    "description": "Messages to include after each match (default: 1)",
                    "default": 1
                }
            },
            "required": []
        }
    ),
    types.Tool(
        name="list_chats",
        description="List WhatsApp chats, optionally filtered by name or JID",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Chat name or JID fragment"
                },
                **_pagination_properties(20),
                "include_last_message": {
                    "type": "boolean",
                    "description": "Include each chat's most recent message (default: true)",
                    "default": True
                },
                "sort_by": {
                    "type": "string",
                    "enum": ["last_active", "name"],
                    "description": "Sort order (default: last_active)",
                    "default": "last_active"
                }
            },
            "required": []
        }
    ),
    types.Tool(
        name="get_chat",
        description="Get a single WhatsApp chat by JID. Returns {} if the chat is unknown.",
        inputSchema={
            "type": "object",
            "properties": {
                "chat_jid": {
                    "type": "string",
                    "description": "Chat JID"
                },
                "include_last_message": {
                    "type": "boolean",
                    "description": "Include the chat's most recent message (default: true)",
                    "default": True
                }
            },
            "required": ["chat_jid"]
        }
    ),
    types.Tool(
        name="get_direct_chat_by_contact",
        description="Find the one-to-one WhatsApp chat with a phone number",
        inputSchema={
            "type": "object",
            "properties": {
                "phone_number": {
                    "type": "string",
                    "description": "Phone number with country code"
                }
            },
            "required": ["phone_number"]
        }
    ),
    types.Tool(
        name="get_contact_chats",
        description="List every WhatsApp chat a contact takes part in, most recent first",
        inputSchema={
            "type": "object",
            "properties": {
                "jid": {
                    "type": "string",
                    "description": "Contact JID or phone number"
                },
                **_pagination_properties(20)
            },
            "required": ["jid"]
        }
    ),
    types.Tool(
        name="get_last_interaction",
        description="Get the most recent WhatsApp message exchanged with a contact",
        inputSchema={
            "type": "object",
            "properties": {
                "jid": {
                    "type": "string",
                    "description": "Contact JID or phone number"
                }
            },
            "required": ["jid"]
        }
    ),
    types.Tool(
        name="get_message_context",
        description="Get a WhatsApp message with the messages immediately before and after it in the same chat",
        inputSchema={
            "type": "object",
            "properties": {
                "message_id": {
                    "type": "string",
                    "description": "Message ID"
                },
                "chat_jid": {
                    "type": "string",
                    "description": "JID of the chat the message belongs to"
                },
                "before": {
                    "type": "number",
                    "description": "Messages to include before (default: 5)",
                    "default": 5
                },
                "after": {
                    "type": "number",
                    "description": "Messages to include after (default: 5)",
                    "default": 5
                }
            },
            "required": ["message_id", "chat_jid"]
        }
    ),
    types.Tool(
        name="send_message",
        description=(
            "Send a WhatsApp text message. The recipient is a phone number with "
            "country code (no + needed) or a full JID for individuals and groups."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "recipient": {
                    "type": "string",
                    "description": "Phone number or JID"
                },
                "message": {
                    "type": "string",
                    "description": "Message text to send"
                }
            },
            "required": ["recipient", "message"]
        }
    ),
]


async def dispatch_tool(
    name: str,
    arguments: dict,
    components: Components
) -> list[types.TextContent]:
    """
    Route a tool call to its handler.

    Raises:
        ValueError: for unknown tool names
    """
    entry = TOOL_HANDLERS.get(name)
    if entry is None:
        raise ValueError(f"Unknown tool: {name}")
    handler, dependency = entry
    return await handler(arguments or {}, getattr(components, dependency))


# Initialize server
app = Server("whatsapp-bridge")


@app.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """List available MCP tools."""
    return TOOLS


@app.call_tool()
async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
    """
    Handle MCP tool calls.

    Args:
        name: Tool name
        arguments: Tool arguments

    Returns:
        List of TextContent responses
    """
    logger.info(f"Tool called: {name} with args: {arguments}")

    try:
        return await dispatch_tool(name, arguments, get_components())
    except Exception as e:
        logger.error(f"Error executing tool {name}: {e}", exc_info=True)
        return [
            types.TextContent(
                type="text",
                text=f"Error: {str(e)}"
            )
        ]


async def main():
    """Run the MCP server."""
    config = load_config()
    setup_logging(config, "mcp_server.log")

    logger.info("Starting WhatsApp Bridge MCP Server...")
    logger.info(f"Server name: {config['server_name']}")
    logger.info(f"Version: {config['version']}")

    components = build_components(config)
    set_components(components)

    store_path = components.store.db_path
    if not store_path.exists():
        logger.warning(f"Message store not found at {store_path} - read tools will fail until the bridge daemon runs")

    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )
    finally:
        components.close()
        set_components(None)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
