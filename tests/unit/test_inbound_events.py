"""Unit tests for inbound WebSocket event validation."""

import pytest
from pydantic import ValidationError

from tradechat.ws.schemas import (
    ERROR_EVENTS,
    InboundEvent,
    JoinRoom,
    SendMessage,
    UpdateSignalOutcome,
    parse_inbound,
)


class TestParseInbound:
    def test_join_room(self):
        event = parse_inbound({"event": "join_room", "room": "forex", "username": "alice"})
        assert isinstance(event, JoinRoom)
        assert event.room == "forex"

    def test_camel_case_fields(self):
        event = parse_inbound({
            "event": "send_message",
            "type": "signal",
            "username": "bob",
            "room": "forex",
            "signal": {"pair": "XAUUSD"},
            "isOfficial": True,
        })
        assert isinstance(event, SendMessage)
        assert event.is_official is True

    def test_close_price_alias(self):
        event = parse_inbound({
            "event": "update_signal_outcome",
            "messageId": 7,
            "username": "bob",
            "outcome": "win",
            "closePrice": 2005,
        })
        assert isinstance(event, UpdateSignalOutcome)
        assert event.message_id == 7
        assert event.close_price == 2005.0

    @pytest.mark.parametrize("price", [float("nan"), float("inf"), 0, -1])
    def test_unusable_close_price_rejected(self, price):
        with pytest.raises(ValidationError):
            parse_inbound({
                "event": "update_signal_outcome",
                "messageId": 7,
                "username": "bob",
                "outcome": "win",
                "closePrice": price,
            })

    def test_closed_by_must_match_actor(self):
        frame = {
            "event": "update_signal_outcome",
            "messageId": 7,
            "username": "bob",
            "outcome": "win",
            "closePrice": 2005,
        }
        assert parse_inbound({**frame, "closedBy": "bob"}).closed_by == "bob"
        with pytest.raises(ValidationError):
            parse_inbound({**frame, "closedBy": "carol"})

    def test_unknown_event_rejected(self):
        with pytest.raises(ValidationError):
            parse_inbound({"event": "drop_tables"})

    def test_missing_field_rejected(self):
        with pytest.raises(ValidationError):
            parse_inbound({"event": "join_room", "room": "forex"})

    def test_empty_room_rejected(self):
        with pytest.raises(ValidationError):
            parse_inbound({"event": "join_room", "room": "", "username": "alice"})


class TestErrorEvents:
    def test_every_event_has_error_reply(self):
        from typing import get_args

        union = get_args(get_args(InboundEvent)[0])
        names = {get_args(model.model_fields["event"].annotation)[0] for model in union}
        assert names == set(ERROR_EVENTS)
