"""
Error handling utilities for MCP tool handlers.

Turns store failures into explicit error responses. A failed read is
never reported as an empty result.
"""

import logging

from mcp import types

from wabridge.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

BRIDGE_NOT_RUNNING_HELP = """
To create and populate the store, start the bridge daemon:

    wabridge-daemon start --foreground

and make sure the protocol client is paired and pushing events to it.
"""


def handle_store_error(
    e: Exception,
    operation: str = ""
) -> list[types.TextContent]:
    """
    Handle store-related errors with smart detection.

    Args:
        e: The exception that was raised
        operation: Description of what operation was being performed

    Returns:
        Formatted error response with specific troubleshooting info
    """
    error_msg = "Database error"
    if operation:
        error_msg += f" during {operation}"
    error_msg += f": {e}"

    logger.error(error_msg, exc_info=True)

    if isinstance(e, StoreUnavailableError):
        return [types.TextContent(
            type="text",
            text=(
                f"❌ Message store unavailable\n\n"
                f"Error: {e}\n"
                f"{BRIDGE_NOT_RUNNING_HELP}"
            )
        )]

    error_str = str(e).lower()
    if "locked" in error_str or "busy" in error_str:
        return [types.TextContent(
            type="text",
            text=(
                f"⏳ Database is locked\n\n"
                f"Error: {e}\n\n"
                "The bridge daemon may be in the middle of a large history sync.\n"
                "Wait a few seconds and try again."
            )
        )]

    return [types.TextContent(
        type="text",
        text=(
            f"{error_msg}\n\n"
            "Possible causes:\n"
            "• Bridge daemon has not created the store yet\n"
            "• Store file is corrupted or from a newer version\n"
            "• File permissions on the data directory"
        )
    )]
