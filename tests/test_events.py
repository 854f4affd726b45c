"""
tests.test_events
~~~~~~~~~~~~~~~~~

入站事件校验与出站事件序列化测试。
"""
from __future__ import annotations

import typing

import pytest
from pydantic import ValidationError

from app.schemas.events import (
    FailureReason,
    InboundEvent,
    OperationFailedEvent,
    SendMessageEvent,
    TypingEvent,
    guess_action,
    parse_inbound_event,
)
from app.services.broker import ChatBroker


class TestParseInboundEvent:
    """入站事件判别联合。"""

    def test_parses_json_text(self) -> None:
        event = parse_inbound_event('{"type": "typing", "isTyping": true, "room": "general"}')

        assert isinstance(event, TypingEvent)
        assert event.is_typing is True
        assert event.room == "general"

    def test_camel_case_fields_and_defaults(self) -> None:
        event = parse_inbound_event({"type": "send-message", "content": " hi ", "clientToken": "tmp-1"})

        assert isinstance(event, SendMessageEvent)
        assert event.content == "hi"
        assert event.room is None
        assert event.client_token == "tmp-1"

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            '{"content": "no type"}',
            '{"type": "send_mesage", "content": "typo"}',
            '{"type": "identify", "displayName": "   "}',
            '{"type": "join-room"}',
            '{"type": "send-message", "content": ""}',
            '{"type": "edit-message", "id": "1"}',
        ],
    )
    def test_rejects_invalid_frames(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            parse_inbound_event(raw)

    def test_image_only_message_is_valid(self) -> None:
        event = parse_inbound_event({"type": "send-message", "image": "data:image/png;base64,AAAA"})

        assert event.content == ""
        assert event.image.startswith("data:image/png")

    def test_guess_action(self) -> None:
        assert guess_action('{"type": "edit-message"}') == "edit-message"
        assert guess_action({"type": "nope"}) == "nope"
        assert guess_action("garbage") == "unknown"
        assert guess_action("[1, 2]") == "unknown"


class TestOutboundEvents:
    """出站事件线上格式。"""

    def test_operation_failed_wire_format(self) -> None:
        wire = OperationFailedEvent(
            action="send-message",
            reason=FailureReason.PERSISTENCE_UNAVAILABLE,
            client_token="tmp-1",
        ).to_wire()

        assert wire == {
            "type": "operation-failed",
            "action": "send-message",
            "reason": "persistence_unavailable",
            "clientToken": "tmp-1",
        }


def test_every_inbound_event_has_a_handler(broker: ChatBroker) -> None:
    """broker 的分发表覆盖全部入站事件类型。"""
    union = typing.get_args(InboundEvent)[0]
    event_types = {
        typing.get_args(model.model_fields["type"].annotation)[0]
        for model in typing.get_args(union)
    }

    assert event_types == set(broker._handlers)
