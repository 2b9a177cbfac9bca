"""
Tests for recipient normalization and the outbound dispatcher.
"""

from unittest.mock import MagicMock

import pytest

from wabridge.dispatcher import OutboundDispatcher, normalize_recipient
from wabridge.errors import ValidationError


@pytest.fixture
def session():
    s = MagicMock()
    s.send.return_value = (True, "queued")
    s.send_timeout_s = 10.0
    return s


@pytest.fixture
def dispatcher(session):
    return OutboundDispatcher(session)


class TestNormalizeRecipient:
    """Tests for normalize_recipient."""

    def test_bare_and_qualified_normalize_identically(self):
        assert normalize_recipient("15551234567") == normalize_recipient("15551234567@s.whatsapp.net")

    @pytest.mark.parametrize("raw", [
        "+15551234567",
        "+1 (555) 123-4567",
        "1.555.123.4567",
        "  15551234567  ",
    ])
    def test_formatting_stripped(self, raw):
        assert normalize_recipient(raw) == "15551234567@s.whatsapp.net"

    def test_group_jid_unchanged(self):
        assert normalize_recipient("120363025@g.us") == "120363025@g.us"

    def test_custom_suffix(self):
        assert normalize_recipient("123", suffix="@c.us") == "123@c.us"

    @pytest.mark.parametrize("raw", ["", "   ", "john", "@g.us", "123@", None])
    def test_invalid_recipients(self, raw):
        with pytest.raises(ValidationError):
            normalize_recipient(raw)


class TestOutboundDispatcher:
    """Tests for OutboundDispatcher.send."""

    def test_success(self, dispatcher, session):
        result = dispatcher.send("15551234567", "hello")
        assert result.success is True
        assert result.message == "Message sent to 15551234567@s.whatsapp.net"
        session.send.assert_called_once_with("15551234567@s.whatsapp.net", "hello")

    def test_same_destination_for_both_forms(self, dispatcher, session):
        dispatcher.send("15551234567", "a")
        dispatcher.send("15551234567@s.whatsapp.net", "b")
        destinations = [c.args[0] for c in session.send.call_args_list]
        assert destinations[0] == destinations[1]

    def test_invalid_recipient_never_reaches_session(self, dispatcher, session):
        result = dispatcher.send("john", "hello")
        assert result.success is False
        assert "Invalid recipient" in result.message
        session.send.assert_not_called()

    def test_empty_text_rejected(self, dispatcher, session):
        result = dispatcher.send("15551234567", "   ")
        assert result.success is False
        session.send.assert_not_called()

    def test_protocol_rejection(self, dispatcher, session):
        session.send.return_value = (False, "not on WhatsApp")
        result = dispatcher.send("15551234567", "hello")
        assert result.success is False
        assert "not on WhatsApp" in result.message

    def test_timeout_is_failure_result(self, dispatcher, session):
        session.send.side_effect = TimeoutError("slow")
        result = dispatcher.send("15551234567", "hello")
        assert result.success is False
        assert "timed out after 10.0s" in result.message

    def test_unreachable_client(self, dispatcher, session):
        session.send.side_effect = ConnectionRefusedError("refused")
        result = dispatcher.send("15551234567", "hello")
        assert result.success is False
        assert "unreachable" in result.message

    def test_unexpected_error_does_not_escape(self, dispatcher, session):
        session.send.side_effect = RuntimeError("kaboom")
        result = dispatcher.send("15551234567", "hello")
        assert result.success is False
        assert "kaboom" in result.message

    def test_no_automatic_retry(self, dispatcher, session):
        session.send.return_value = (False, "rate limited")
        dispatcher.send("15551234567", "hello")
        assert session.send.call_count == 1

    def test_result_dict_shape(self, dispatcher):
        assert set(dispatcher.send("15551234567", "hi").to_dict()) == {"success", "message"}
