"""
Tests for the MCP tool handlers and server dispatch.

Handlers run against a real store for the happy paths and against
MagicMock collaborators for failure paths.
"""

import json
import re
from unittest.mock import MagicMock

import pytest

from conftest import make_record
from wabridge.config import load_config
from wabridge.errors import StoreReadError, StoreUnavailableError
from wabridge.handlers import chats, contacts, messages, messaging
from wabridge.models import SendResult
from wabridge.server import TOOL_HANDLERS, TOOLS, Components, build_components, dispatch_tool

JOHN = "15550001@s.whatsapp.net"
JANE = "15559999@s.whatsapp.net"
FAMILY = "120363025@g.us"


@pytest.fixture
def populated(ingest):
    ingest(
        make_record(JOHN, "j1", 1767600000, "hey there", sender=JOHN, chat_name="John Doe"),
        make_record(JANE, "n1", 1767600060, "lunch tomorrow", sender=JANE, chat_name="Jane"),
        make_record(FAMILY, "f1", 1767600120, "dinner at 7", sender=JOHN, chat_name="Family"),
        make_record(FAMILY, "f2", 1767600180, "", sender=JANE, media_type="image"),
        make_record(FAMILY, "f3", 1767600240, "see you", sender="15557777@s.whatsapp.net", is_from_me=True),
    )


def _mock_queries(max_limit=500, max_search=500, max_context=50):
    queries = MagicMock()
    queries.max_limit = max_limit
    queries.max_search = max_search
    queries.max_context = max_context
    return queries


def _text(result) -> str:
    assert len(result) == 1
    return result[0].text


def _json(result):
    return json.loads(_text(result))


class TestSearchContacts:
    """Tests for search_contacts handler."""

    @pytest.mark.asyncio
    async def test_returns_json_contacts(self, queries, populated):
        data = _json(await contacts.handle_search_contacts({"query": "john"}, queries))
        assert data == [{"phone_number": "15550001", "name": "John Doe", "jid": JOHN}]

    @pytest.mark.asyncio
    async def test_missing_query(self, queries):
        text = _text(await contacts.handle_search_contacts({}, queries))
        assert text.startswith("Validation error:")
        assert "query" in text

    @pytest.mark.asyncio
    async def test_store_unavailable_is_explicit_error(self):
        queries = _mock_queries()
        queries.search_contacts.side_effect = StoreUnavailableError("Store not found")
        text = _text(await contacts.handle_search_contacts({"query": "john"}, queries))
        assert "Message store unavailable" in text
        assert "wabridge-daemon start" in text


class TestContactLookups:
    """Tests for the supplemented contact tools."""

    @pytest.mark.asyncio
    async def test_direct_chat_by_contact(self, queries, populated):
        data = _json(await contacts.handle_get_direct_chat_by_contact({"phone_number": "+15550001"}, queries))
        assert data["jid"] == JOHN
        assert data["is_group"] is False

    @pytest.mark.asyncio
    async def test_direct_chat_not_found(self, queries, populated):
        assert _json(await contacts.handle_get_direct_chat_by_contact({"phone_number": "1999"}, queries)) == {}

    @pytest.mark.asyncio
    async def test_contact_chats(self, queries, populated):
        data = _json(await contacts.handle_get_contact_chats({"jid": JOHN}, queries))
        assert [c["jid"] for c in data] == [FAMILY, JOHN]

    @pytest.mark.asyncio
    async def test_last_interaction_formatted(self, queries, populated):
        text = _text(await contacts.handle_get_last_interaction({"jid": JANE}, queries))
        assert "Chat: Family" in text
        assert "From: Jane:" in text
        assert "[image - Message ID: f2" in text

    @pytest.mark.asyncio
    async def test_last_interaction_none(self, queries, populated):
        text = _text(await contacts.handle_get_last_interaction({"jid": "1999"}, queries))
        assert text.startswith("No messages found")


class TestListMessages:
    """Tests for list_messages handler."""

    @pytest.mark.asyncio
    async def test_lines_newest_first_with_names(self, queries, populated):
        text = _text(await messages.handle_list_messages(
            {"chat_jid": FAMILY, "include_context": False}, queries
        ))
        lines = text.splitlines()
        assert len(lines) == 3
        assert lines[0].startswith("[2026-01-05 08:04:00] Chat: Family From: Me: [Message ID: f3 - Chat JID: 120363025@g.us]")
        assert lines[0].endswith("see you")
        assert "From: Jane: [image - Message ID: f2 - Chat JID: 120363025@g.us]" in lines[1]
        assert lines[2].endswith("From: John Doe: [Message ID: f1 - Chat JID: 120363025@g.us] dinner at 7")

    @pytest.mark.asyncio
    async def test_context_blocks(self, queries, populated):
        text = _text(await messages.handle_list_messages({"query": "dinner"}, queries))
        lines = text.splitlines()
        assert lines[0].startswith("> ")
        assert "dinner at 7" in lines[0]
        assert lines[1].startswith("  ") and "f2" in lines[1]
        assert lines[-1] == "---"

    @pytest.mark.asyncio
    async def test_time_filters(self, queries, populated):
        text = _text(await messages.handle_list_messages({
            "after": "2026-01-05T08:01:00Z",
            "before": "2026-01-05T08:02:00Z",
            "include_context": False,
        }, queries))
        assert "lunch tomorrow" in text
        assert "dinner at 7" in text
        assert "hey there" not in text

    @pytest.mark.asyncio
    async def test_listed_key_opens_message_context(self, queries, populated):
        text = _text(await messages.handle_list_messages(
            {"query": "lunch", "include_context": False}, queries
        ))
        match = re.search(r"Message ID: (\S+) - Chat JID: (\S+)\]", text)
        assert match

        data = _json(await messages.handle_get_message_context(
            {"message_id": match.group(1), "chat_jid": match.group(2)}, queries
        ))
        assert data["target"]["content"] == "lunch tomorrow"

    @pytest.mark.asyncio
    async def test_no_matches(self, queries, populated):
        text = _text(await messages.handle_list_messages({"query": "nothing like this"}, queries))
        assert text.startswith("No messages found")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arguments, fragment", [
        ({"limit": 0}, "limit"),
        ({"limit": "many"}, "limit"),
        ({"page": -1}, "page"),
        ({"after": "last tuesday"}, "after"),
        ({"after": "2026-01-06", "before": "2026-01-05"}, "time range"),
        ({"context_before": 500}, "context_before"),
        ({"include_context": "sometimes"}, "include_context"),
    ])
    async def test_validation_never_touches_store(self, arguments, fragment):
        queries = _mock_queries()
        text = _text(await messages.handle_list_messages(arguments, queries))
        assert text.startswith("Validation error:")
        assert fragment in text
        queries.list_messages.assert_not_called()

    @pytest.mark.asyncio
    async def test_read_failure_is_not_empty_success(self):
        queries = _mock_queries()
        queries.list_messages.side_effect = StoreReadError("database is locked")
        text = _text(await messages.handle_list_messages({}, queries))
        assert "Database is locked" in text


class TestMessageContext:
    """Tests for get_message_context handler."""

    @pytest.mark.asyncio
    async def test_returns_target_before_after(self, queries, populated):
        data = _json(await messages.handle_get_message_context(
            {"message_id": "f2", "chat_jid": FAMILY, "before": 1, "after": 1}, queries
        ))
        assert data["target"]["id"] == "f2"
        assert [m["id"] for m in data["before"]] == ["f1"]
        assert [m["id"] for m in data["after"]] == ["f3"]

    @pytest.mark.asyncio
    async def test_not_found(self, queries, populated):
        text = _text(await messages.handle_get_message_context(
            {"message_id": "zzz", "chat_jid": FAMILY}, queries
        ))
        assert text.startswith("No message found")

    @pytest.mark.asyncio
    async def test_requires_chat_jid(self, queries):
        text = _text(await messages.handle_get_message_context({"message_id": "f2"}, queries))
        assert "Missing required parameter: chat_jid" in text


class TestChats:
    """Tests for list_chats / get_chat handlers."""

    @pytest.mark.asyncio
    async def test_list_chats(self, queries, populated):
        data = _json(await chats.handle_list_chats({}, queries))
        assert [c["jid"] for c in data] == [FAMILY, JANE, JOHN]
        assert data[0]["is_group"] is True
        assert data[0]["last_message"]["id"] == "f3"

    @pytest.mark.asyncio
    async def test_list_chats_without_last_message(self, queries, populated):
        data = _json(await chats.handle_list_chats({"include_last_message": False, "sort_by": "name"}, queries))
        assert [c["name"] for c in data] == ["Family", "Jane", "John Doe"]
        assert all("last_message" not in c for c in data)

    @pytest.mark.asyncio
    async def test_list_chats_bad_sort(self, queries):
        text = _text(await chats.handle_list_chats({"sort_by": "size"}, queries))
        assert text.startswith("Validation error:")

    @pytest.mark.asyncio
    async def test_get_chat(self, queries, populated):
        data = _json(await chats.handle_get_chat({"chat_jid": JANE}, queries))
        assert data["name"] == "Jane"

    @pytest.mark.asyncio
    async def test_get_chat_not_found_is_empty(self, queries, populated):
        assert _json(await chats.handle_get_chat({"chat_jid": "nobody@s.whatsapp.net"}, queries)) == {}


class TestSendMessage:
    """Tests for send_message handler."""

    @pytest.mark.asyncio
    async def test_success(self):
        dispatcher = MagicMock()
        dispatcher.send.return_value = SendResult(True, "Message sent to 1555@s.whatsapp.net", "1555@s.whatsapp.net")
        data = _json(await messaging.handle_send_message({"recipient": "1555", "message": "hi"}, dispatcher))
        assert data == {"success": True, "message": "Message sent to 1555@s.whatsapp.net"}

    @pytest.mark.asyncio
    async def test_failure_shape(self):
        dispatcher = MagicMock()
        dispatcher.send.return_value = SendResult(False, "Failed to send message: timed out after 10.0s")
        data = _json(await messaging.handle_send_message({"recipient": "1555", "message": "hi"}, dispatcher))
        assert data["success"] is False
        assert "timed out" in data["message"]

    @pytest.mark.asyncio
    async def test_missing_message_is_failure_result(self):
        dispatcher = MagicMock()
        data = _json(await messaging.handle_send_message({"recipient": "1555"}, dispatcher))
        assert data["success"] is False
        assert "message" in data["message"]
        dispatcher.send.assert_not_called()


class TestServerDispatch:
    """Tests for tool registration and routing."""

    def test_every_tool_has_a_handler(self):
        assert {t.name for t in TOOLS} == set(TOOL_HANDLERS)

    def test_required_core_tools_present(self):
        names = {t.name for t in TOOLS}
        assert {
            "search_contacts", "list_messages", "list_chats",
            "get_chat", "get_message_context", "send_message",
        } <= names

    @pytest.mark.asyncio
    async def test_routes_to_queries_and_dispatcher(self, queries, populated):
        dispatcher = MagicMock()
        dispatcher.send.return_value = SendResult(True, "Message sent to x@s.whatsapp.net", "x@s.whatsapp.net")
        components = Components(
            config={}, store=queries.store, queries=queries,
            session=MagicMock(), dispatcher=dispatcher,
        )

        chat = _json(await dispatch_tool("get_chat", {"chat_jid": JOHN}, components))
        assert chat["jid"] == JOHN

        sent = _json(await dispatch_tool("send_message", {"recipient": "x", "message": "hi"}, components))
        assert sent["success"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool(self, queries):
        components = MagicMock()
        with pytest.raises(ValueError, match="Unknown tool"):
            await dispatch_tool("delete_everything", {}, components)

    def test_components_close_tears_down_session(self):
        session = MagicMock()
        Components(config={}, store=MagicMock(), queries=MagicMock(), session=session, dispatcher=MagicMock()).close()
        session.close.assert_called_once()


class TestConfiguredLimits:
    """Limits from the config file bound tool arguments."""

    def _components(self, tmp_path, limits):
        path = tmp_path / "wabridge.json"
        path.write_text(json.dumps({
            "paths": {"store_db": str(tmp_path / "absent.db")},
            "limits": limits,
        }))
        return build_components(load_config(path))

    @pytest.mark.asyncio
    async def test_raised_message_limit_accepted(self, tmp_path):
        components = self._components(tmp_path, {"max_message_limit": 1000})
        text = _text(await dispatch_tool("list_messages", {"limit": 600}, components))
        assert not text.startswith("Validation error")
        assert "Message store unavailable" in text

    @pytest.mark.asyncio
    async def test_lowered_message_limit_rejected_by_handler(self, tmp_path):
        components = self._components(tmp_path, {"max_message_limit": 100})
        text = _text(await dispatch_tool("list_chats", {"limit": 300}, components))
        assert text.startswith("Validation error: Invalid limit: must be at most 100")

    @pytest.mark.asyncio
    async def test_search_results_limit(self, tmp_path):
        components = self._components(tmp_path, {"max_search_results": 10})
        assert components.queries.max_search == 10
        text = _text(await dispatch_tool("search_contacts", {"query": "john", "limit": 20}, components))
        assert text.startswith("Validation error: Invalid limit: must be at most 10")

    @pytest.mark.asyncio
    async def test_context_window_limit(self, tmp_path):
        components = self._components(tmp_path, {"max_context_window": 3})
        text = _text(await dispatch_tool(
            "get_message_context", {"message_id": "x", "chat_jid": JOHN, "before": 4}, components
        ))
        assert text.startswith("Validation error: Invalid before: must be at most 3")
