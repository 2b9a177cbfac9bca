"""WhatsApp bridge: local message store, sync engine and MCP tool surface."""

__version__ = "0.3.0"

__all__ = ["__version__"]
