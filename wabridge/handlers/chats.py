"""
Chat Handlers

- list_chats: Paginated chat listing with optional last message
- get_chat: Single chat by JID
"""

import logging
from mcp import types

from wabridge.errors import StoreReadError, ValidationError
from wabridge.queries import CHAT_SORTS
from wabridge.utils.validation import (
    validate_non_empty_string,
    validate_optional_string,
    validate_limit,
    validate_page,
    validate_bool,
    validate_enum,
)
from wabridge.utils.responses import json_response, validation_error
from wabridge.utils.errors import handle_store_error

logger = logging.getLogger(__name__)


async def handle_list_chats(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle list_chats tool call.

    Args:
        arguments: {"query": Optional[str], "limit": Optional[int], "page": Optional[int],
                    "include_last_message": Optional[bool], "sort_by": Optional[str]}
        queries: QueryEngine instance

    Returns:
        JSON list of chat records
    """
    query, error = validate_optional_string(arguments.get("query"), "query")
    if error:
        return validation_error(error)

    limit, error = validate_limit(arguments, default=20, max_val=queries.max_limit)
    if error:
        return validation_error(error)

    page, error = validate_page(arguments)
    if error:
        return validation_error(error)

    include_last, error = validate_bool(
        arguments.get("include_last_message"), "include_last_message", default=True
    )
    if error:
        return validation_error(error)

    sort_by, error = validate_enum(
        arguments.get("sort_by"), "sort_by", list(CHAT_SORTS), default="last_active"
    )
    if error:
        return validation_error(error)

    try:
        chats = queries.list_chats(
            query=query,
            limit=limit,
            page=page,
            include_last_message=include_last,
            sort_by=sort_by,
        )
    except ValidationError as e:
        return validation_error(str(e))
    except StoreReadError as e:
        return handle_store_error(e, "list_chats")

    return json_response([c.to_dict() for c in chats])


async def handle_get_chat(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle get_chat tool call.

    Args:
        arguments: {"chat_jid": str, "include_last_message": Optional[bool]}
        queries: QueryEngine instance

    Returns:
        JSON chat record, or {} when the chat does not exist
    """
    chat_jid, error = validate_non_empty_string(arguments.get("chat_jid"), "chat_jid")
    if error:
        return validation_error(error)

    include_last, error = validate_bool(
        arguments.get("include_last_message"), "include_last_message", default=True
    )
    if error:
        return validation_error(error)

    try:
        chat = queries.get_chat(chat_jid, include_last_message=include_last)
    except StoreReadError as e:
        return handle_store_error(e, "get_chat")

    if chat is None:
        return json_response({})
    return json_response(chat.to_dict())
