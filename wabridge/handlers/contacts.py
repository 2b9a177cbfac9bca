"""
Contact Handlers

Contacts are projected from chats and message senders at query time:
- search_contacts: Find contacts by name or phone number
- get_direct_chat_by_contact: One-to-one chat for a phone number
- get_contact_chats: Every chat a contact takes part in
- get_last_interaction: Most recent message with a contact
"""

import logging
from mcp import types

from wabridge.errors import StoreReadError, ValidationError
from wabridge.utils.validation import (
    validate_non_empty_string,
    validate_limit,
    validate_page,
)
from wabridge.utils.responses import (
    json_response,
    text_response,
    validation_error,
    empty_result,
    format_message,
)
from wabridge.utils.errors import handle_store_error

logger = logging.getLogger(__name__)


async def handle_search_contacts(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle search_contacts tool call.

    Args:
        arguments: {"query": str, "limit": Optional[int]}
        queries: QueryEngine instance

    Returns:
        JSON list of {phone_number, name, jid}
    """
    query, error = validate_non_empty_string(arguments.get("query"), "query")
    if error:
        return validation_error(error)

    limit, error = validate_limit(arguments, default=50, max_val=queries.max_search)
    if error:
        return validation_error(error)

    try:
        contacts = queries.search_contacts(query, limit=limit)
    except ValidationError as e:
        return validation_error(str(e))
    except StoreReadError as e:
        return handle_store_error(e, "search_contacts")

    return json_response([c.to_dict() for c in contacts])


async def handle_get_direct_chat_by_contact(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle get_direct_chat_by_contact tool call.

    Args:
        arguments: {"phone_number": str}
        queries: QueryEngine instance
    """
    phone, error = validate_non_empty_string(arguments.get("phone_number"), "phone_number")
    if error:
        return validation_error(error)

    try:
        chat = queries.get_direct_chat_by_contact(phone)
    except ValidationError as e:
        return validation_error(str(e))
    except StoreReadError as e:
        return handle_store_error(e, "get_direct_chat_by_contact")

    if chat is None:
        return json_response({})
    return json_response(chat.to_dict())


async def handle_get_contact_chats(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle get_contact_chats tool call.

    Args:
        arguments: {"jid": str, "limit": Optional[int], "page": Optional[int]}
        queries: QueryEngine instance
    """
    jid, error = validate_non_empty_string(arguments.get("jid"), "jid")
    if error:
        return validation_error(error)

    limit, error = validate_limit(arguments, default=20, max_val=queries.max_limit)
    if error:
        return validation_error(error)

    page, error = validate_page(arguments)
    if error:
        return validation_error(error)

    try:
        chats = queries.get_contact_chats(jid, limit=limit, page=page)
    except ValidationError as e:
        return validation_error(str(e))
    except StoreReadError as e:
        return handle_store_error(e, "get_contact_chats")

    return json_response([c.to_dict() for c in chats])


async def handle_get_last_interaction(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle get_last_interaction tool call.

    Args:
        arguments: {"jid": str}
        queries: QueryEngine instance
    """
    jid, error = validate_non_empty_string(arguments.get("jid"), "jid")
    if error:
        return validation_error(error)

    try:
        message = queries.get_last_interaction(jid)
        if message is None:
            return empty_result("messages", f" with {jid}")
        names = queries.resolve_sender_names([message.sender])
    except StoreReadError as e:
        return handle_store_error(e, "get_last_interaction")

    return text_response(format_message(message, names))
