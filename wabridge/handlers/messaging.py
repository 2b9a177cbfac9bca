"""
Messaging Handlers

- send_message: Send a text message to a phone number or JID
"""

import logging
from mcp import types

from wabridge.utils.validation import validate_non_empty_string
from wabridge.utils.responses import json_response

logger = logging.getLogger(__name__)


async def handle_send_message(
    arguments: dict,
    dispatcher
) -> list[types.TextContent]:
    """
    Handle send_message tool call.

    Validation failures are reported in the same {success, message} shape
    as delivery failures.

    Args:
        arguments: {"recipient": str, "message": str}
        dispatcher: OutboundDispatcher instance

    Returns:
        JSON {"success": bool, "message": str}
    """
    recipient, error = validate_non_empty_string(arguments.get("recipient"), "recipient")
    if error:
        return json_response({"success": False, "message": f"Validation error: {error}"})

    message, error = validate_non_empty_string(arguments.get("message"), "message")
    if error:
        return json_response({"success": False, "message": f"Validation error: {error}"})

    result = dispatcher.send(recipient, message)
    if result.success:
        logger.info(f"Message sent successfully to {result.destination}")
    else:
        logger.error(f"Failed to send message to {recipient}: {result.message}")

    return json_response(result.to_dict())
