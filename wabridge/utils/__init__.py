"""
MCP Server Utilities

Shared validation, response formatting, and error handling utilities
for the WhatsApp bridge MCP server.
"""

from .validation import (
    validate_positive_int,
    validate_non_empty_string,
    validate_optional_string,
    validate_limit,
    validate_page,
    validate_window,
    validate_bool,
    validate_datetime,
    validate_enum,
    MAX_MESSAGE_LIMIT,
    MAX_CONTEXT_WINDOW,
    MIN_LIMIT,
)

from .responses import (
    text_response,
    json_response,
    error_response,
    validation_error,
    empty_result,
    format_message,
    format_message_list,
)

from .errors import handle_store_error

__all__ = [
    # Validation
    "validate_positive_int",
    "validate_non_empty_string",
    "validate_optional_string",
    "validate_limit",
    "validate_page",
    "validate_window",
    "validate_bool",
    "validate_datetime",
    "validate_enum",
    "MAX_MESSAGE_LIMIT",
    "MAX_CONTEXT_WINDOW",
    "MIN_LIMIT",
    # Responses
    "text_response",
    "json_response",
    "error_response",
    "validation_error",
    "empty_result",
    "format_message",
    "format_message_list",
    # Errors
    "handle_store_error",
]
