"""
Validation utilities for MCP tool arguments.

Provides standardized validation functions that return (value, error) tuples.
Nothing here touches the store.
"""

from datetime import datetime
from typing import Optional

from wabridge.models import parse_timestamp

# Fallback bounds; handlers pass the configured limits from the query engine
MAX_MESSAGE_LIMIT = 500
MAX_CONTEXT_WINDOW = 50
MAX_PAGE = 100000
MIN_LIMIT = 1  # Minimum limit value


def validate_positive_int(
    value,
    name: str,
    min_val: int = MIN_LIMIT,
    max_val: int = MAX_MESSAGE_LIMIT
) -> tuple[int | None, str | None]:
    """
    Validate that a value is an integer within bounds.

    Args:
        value: Value to validate
        name: Parameter name for error messages
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        Tuple of (validated_value, error_message). If valid, error_message is None.
    """
    if value is None:
        return None, None

    if isinstance(value, bool):
        return None, f"Invalid {name}: must be an integer, got bool"

    if isinstance(value, float) and not value.is_integer():
        return None, f"Invalid {name}: must be an integer, got {value}"

    try:
        int_value = int(value)
    except (TypeError, ValueError):
        return None, f"Invalid {name}: must be an integer, got {type(value).__name__}"

    if int_value < min_val:
        return None, f"Invalid {name}: must be at least {min_val}, got {int_value}"

    if int_value > max_val:
        return None, f"Invalid {name}: must be at most {max_val}, got {int_value}"

    return int_value, None


def validate_non_empty_string(value, name: str) -> tuple[str | None, str | None]:
    """
    Validate that a value is a non-empty string.

    Args:
        value: Value to validate
        name: Parameter name for error messages

    Returns:
        Tuple of (validated_value, error_message). If valid, error_message is None.
    """
    if value is None:
        return None, f"Missing required parameter: {name}"

    if not isinstance(value, str):
        return None, f"Invalid {name}: must be a string, got {type(value).__name__}"

    stripped = value.strip()
    if not stripped:
        return None, f"Invalid {name}: cannot be empty"

    return stripped, None


def validate_optional_string(value, name: str) -> tuple[str | None, str | None]:
    """Like validate_non_empty_string, but None and blank strings mean 'not given'."""
    if value is None:
        return None, None
    if not isinstance(value, str):
        return None, f"Invalid {name}: must be a string, got {type(value).__name__}"
    return value.strip() or None, None


def validate_limit(
    arguments: dict,
    default: int = 20,
    max_val: int = MAX_MESSAGE_LIMIT
) -> tuple[int, str | None]:
    """
    Extract and validate limit from arguments dict.

    Args:
        arguments: The arguments dict from the tool call
        default: Default value if not provided
        max_val: Maximum allowed value

    Returns:
        Tuple of (limit_value, error_message). Uses default if not provided.
    """
    limit_raw = arguments.get("limit", default)
    limit, error = validate_positive_int(limit_raw, "limit", max_val=max_val)
    if error:
        return default, error
    return limit if limit is not None else default, None


def validate_page(arguments: dict) -> tuple[int, str | None]:
    """Extract and validate the zero-based page index."""
    page, error = validate_positive_int(arguments.get("page", 0), "page", min_val=0, max_val=MAX_PAGE)
    if error:
        return 0, error
    return page if page is not None else 0, None


def validate_window(
    arguments: dict,
    name: str,
    default: int,
    max_val: int = MAX_CONTEXT_WINDOW
) -> tuple[int, str | None]:
    """Extract and validate a before/after context window size."""
    value, error = validate_positive_int(arguments.get(name, default), name, min_val=0, max_val=max_val)
    if error:
        return default, error
    return value if value is not None else default, None


def validate_bool(value, name: str, default: bool) -> tuple[bool, str | None]:
    """Accept real booleans and the usual string spellings."""
    if value is None:
        return default, None
    if isinstance(value, bool):
        return value, None
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes"):
        return True, None
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no"):
        return False, None
    return default, f"Invalid {name}: must be a boolean, got {value!r}"


def validate_datetime(value, name: str) -> tuple[datetime | None, str | None]:
    """Validate an optional ISO 8601 date/time (naive values are UTC)."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None, None
    if not isinstance(value, str):
        return None, f"Invalid {name}: must be an ISO 8601 string, got {type(value).__name__}"
    try:
        return parse_timestamp(value), None
    except ValueError:
        return None, f"Invalid {name}: expected ISO 8601 like 2026-01-01T09:00:00, got {value!r}"


def validate_enum(
    value,
    name: str,
    allowed_values: list[str],
    default: Optional[str] = None
) -> tuple[str | None, str | None]:
    """
    Validate that a value is one of the allowed values.

    Args:
        value: Value to validate
        name: Parameter name for error messages
        allowed_values: List of valid values
        default: Default value if not provided

    Returns:
        Tuple of (validated_value, error_message).
    """
    if value is None:
        if default is not None:
            return default, None
        return None, f"Missing required parameter: {name}"

    if value not in allowed_values:
        return None, (
            f"Invalid {name}: must be one of {allowed_values}, "
            f"got '{value}'"
        )

    return value, None
