"""
Message Reading Handlers

- list_messages: Filtered, paginated message listing with optional context
- get_message_context: A message with the messages around it
"""

import logging
from mcp import types

from wabridge.errors import StoreReadError, ValidationError
from wabridge.utils.validation import (
    validate_non_empty_string,
    validate_optional_string,
    validate_limit,
    validate_page,
    validate_window,
    validate_bool,
    validate_datetime,
)
from wabridge.utils.responses import (
    json_response,
    text_response,
    validation_error,
    empty_result,
    format_message_list,
)
from wabridge.utils.errors import handle_store_error

logger = logging.getLogger(__name__)


def _senders(results) -> set:
    senders = set()
    for result in results:
        senders.add(result.message.sender)
        senders.update(m.sender for m in result.before)
        senders.update(m.sender for m in result.after)
    return senders


async def handle_list_messages(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle list_messages tool call.

    Args:
        arguments: {
            "after": Optional[str], "before": Optional[str],
            "sender_phone_number": Optional[str], "chat_jid": Optional[str],
            "query": Optional[str], "limit": Optional[int], "page": Optional[int],
            "include_context": Optional[bool],
            "context_before": Optional[int], "context_after": Optional[int]
        }
        queries: QueryEngine instance

    Returns:
        Formatted message lines, newest first
    """
    after, error = validate_datetime(arguments.get("after"), "after")
    if error:
        return validation_error(error)

    before, error = validate_datetime(arguments.get("before"), "before")
    if error:
        return validation_error(error)

    if after and before and after > before:
        return validation_error("Invalid time range: 'after' must not be later than 'before'")

    sender, error = validate_optional_string(arguments.get("sender_phone_number"), "sender_phone_number")
    if error:
        return validation_error(error)

    chat_jid, error = validate_optional_string(arguments.get("chat_jid"), "chat_jid")
    if error:
        return validation_error(error)

    query, error = validate_optional_string(arguments.get("query"), "query")
    if error:
        return validation_error(error)

    limit, error = validate_limit(arguments, default=20, max_val=queries.max_limit)
    if error:
        return validation_error(error)

    page, error = validate_page(arguments)
    if error:
        return validation_error(error)

    include_context, error = validate_bool(arguments.get("include_context"), "include_context", default=True)
    if error:
        return validation_error(error)

    context_before, error = validate_window(arguments, "context_before", default=1, max_val=queries.max_context)
    if error:
        return validation_error(error)

    context_after, error = validate_window(arguments, "context_after", default=1, max_val=queries.max_context)
    if error:
        return validation_error(error)

    try:
        results = queries.list_messages(
            after=after,
            before=before,
            sender=sender,
            chat_jid=chat_jid,
            query=query,
            limit=limit,
            page=page,
            include_context=include_context,
            context_before=context_before,
            context_after=context_after,
        )
        if not results:
            return empty_result("messages", " matching the given filters")
        names = queries.resolve_sender_names(_senders(results))
    except ValidationError as e:
        return validation_error(str(e))
    except StoreReadError as e:
        return handle_store_error(e, "list_messages")

    return text_response(format_message_list(results, names))


async def handle_get_message_context(
    arguments: dict,
    queries
) -> list[types.TextContent]:
    """
    Handle get_message_context tool call.

    Args:
        arguments: {"message_id": str, "chat_jid": str,
                    "before": Optional[int], "after": Optional[int]}
        queries: QueryEngine instance

    Returns:
        JSON {target, before[], after[]}
    """
    message_id, error = validate_non_empty_string(arguments.get("message_id"), "message_id")
    if error:
        return validation_error(error)

    chat_jid, error = validate_non_empty_string(arguments.get("chat_jid"), "chat_jid")
    if error:
        return validation_error(error)

    before, error = validate_window(arguments, "before", default=5, max_val=queries.max_context)
    if error:
        return validation_error(error)

    after, error = validate_window(arguments, "after", default=5, max_val=queries.max_context)
    if error:
        return validation_error(error)

    try:
        context = queries.get_message_context(message_id, chat_jid, before=before, after=after)
    except ValidationError as e:
        return validation_error(str(e))
    except StoreReadError as e:
        return handle_store_error(e, "get_message_context")

    if context is None:
        return empty_result("message", f" with ID {message_id} in {chat_jid}")
    return json_response(context.to_dict())
