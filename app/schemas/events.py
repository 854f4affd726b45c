"""
app.schemas.events
~~~~~~~~~~~~~~~~~~

WebSocket 事件契约 —— 入站（客户端 → 服务端）与出站（服务端 → 客户端）。

每一帧都是一个带 ``type`` 判别字段的 JSON 对象。入站事件组成一个封闭的
判别联合（discriminated union），由 ``parse_inbound_event()`` 一次性校验，
拼错的事件名会在校验阶段直接失败，而不会被静默忽略。
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import ConfigDict, Field, StringConstraints, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

from app.core.settings import settings
from app.schemas.messages import CamelModel, ChatMessage, Reaction, UserProfile

RoomName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
MessageId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
ClientToken = Annotated[str, StringConstraints(max_length=128)]


class FailureReason(str, Enum):
    """``operation-failed`` 事件携带的原因码。"""

    INVALID_PAYLOAD = "invalid_payload"
    NOT_IDENTIFIED = "not_identified"
    NOT_A_MEMBER = "not_a_member"
    NO_ACTIVE_ROOM = "no_active_room"
    UNKNOWN_RECIPIENT = "unknown_recipient"
    RATE_LIMITED = "rate_limited"
    PERSISTENCE_UNAVAILABLE = "persistence_unavailable"


# ── 入站事件 ──────────────────────────────────────────────────────────

class InboundModel(CamelModel):
    """入站事件基类：去除首尾空白，忽略未知字段。"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class IdentifyEvent(InboundModel):
    type: Literal["identify"]
    display_name: str = Field(..., min_length=1, max_length=64)


class JoinRoomEvent(InboundModel):
    type: Literal["join-room"]
    room: RoomName


class LeaveRoomEvent(InboundModel):
    type: Literal["leave-room"]
    room: RoomName


class SendMessageEvent(InboundModel):
    """发送消息。``room`` 缺省时使用连接当前所在房间。"""

    type: Literal["send-message"]
    content: str = Field(default="", max_length=2000)
    room: RoomName | None = None
    image: str | None = None
    client_token: ClientToken | None = None

    @model_validator(mode="after")
    def _check_body(self) -> SendMessageEvent:
        if self.image is not None and len(self.image) > settings.MAX_IMAGE_BYTES:
            raise ValueError("image payload too large")
        if not self.content and not self.image:
            raise ValueError("content or image is required")
        return self


class EditMessageEvent(InboundModel):
    type: Literal["edit-message"]
    id: MessageId
    content: str = Field(..., min_length=1, max_length=2000)
    room: RoomName | None = None


class DeleteMessageEvent(InboundModel):
    type: Literal["delete-message"]
    id: MessageId
    room: RoomName | None = None


class TypingEvent(InboundModel):
    type: Literal["typing"]
    is_typing: bool
    room: RoomName | None = None


class AddReactionEvent(InboundModel):
    type: Literal["add-reaction"]
    id: MessageId
    emoji: str = Field(..., min_length=1, max_length=16)
    room: RoomName | None = None


class PrivateMessageEvent(InboundModel):
    type: Literal["private-message"]
    to: str = Field(..., min_length=1, max_length=64)
    content: str = Field(..., min_length=1, max_length=2000)
    client_token: ClientToken | None = None


class MarkReadEvent(InboundModel):
    type: Literal["mark-read"]
    id: MessageId
    room: RoomName | None = None


InboundEvent = Annotated[
    Union[
        IdentifyEvent,
        JoinRoomEvent,
        LeaveRoomEvent,
        SendMessageEvent,
        EditMessageEvent,
        DeleteMessageEvent,
        TypingEvent,
        AddReactionEvent,
        PrivateMessageEvent,
        MarkReadEvent,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


def parse_inbound_event(raw: str | bytes | dict) -> InboundEvent:
    """把一帧原始数据校验为具体的入站事件。

    Raises:
        pydantic.ValidationError: 非 JSON、缺少 ``type``、未知事件名或字段不合法。
    """
    if isinstance(raw, dict):
        return _inbound_adapter.validate_python(raw)
    return _inbound_adapter.validate_json(raw)


def guess_action(raw: str | bytes | dict) -> str:
    """尽力从一帧非法数据中取出 ``type``，用于 ``operation-failed.action``。"""
    data = raw
    if not isinstance(raw, dict):
        try:
            data = json.loads(raw)
        except ValueError:
            return "unknown"
    if isinstance(data, dict) and isinstance(data.get("type"), str):
        return data["type"][:64]
    return "unknown"


# ── 出站事件 ──────────────────────────────────────────────────────────

class ConnectedEvent(CamelModel):
    type: Literal["connected"] = "connected"
    connection_id: str


class PresenceSnapshotEvent(CamelModel):
    type: Literal["presence-snapshot"] = "presence-snapshot"
    room: str
    users: list[UserProfile]


class RoomHistoryEvent(CamelModel):
    type: Literal["room-history"] = "room-history"
    room: str
    messages: list[ChatMessage]


class RoomJoinedEvent(CamelModel):
    type: Literal["room-joined"] = "room-joined"
    room: str


class UserJoinedEvent(CamelModel):
    type: Literal["user-joined"] = "user-joined"
    room: str
    connection_id: str
    display_name: str


class NewMessageEvent(CamelModel):
    type: Literal["new-message"] = "new-message"
    message: ChatMessage
    client_token: str | None = None


class MessageEditedEvent(CamelModel):
    type: Literal["message-edited"] = "message-edited"
    room: str
    id: str
    content: str
    edited: Literal[True] = True


class MessageDeletedEvent(CamelModel):
    type: Literal["message-deleted"] = "message-deleted"
    room: str
    id: str


class TypingSnapshotEvent(CamelModel):
    type: Literal["typing-snapshot"] = "typing-snapshot"
    room: str
    users: list[str]


class ReactionAddedEvent(CamelModel):
    type: Literal["reaction-added"] = "reaction-added"
    room: str
    id: str
    emoji: str
    reactor_id: str
    reactions: list[Reaction]


class PrivateMessageDeliveredEvent(CamelModel):
    type: Literal["private-message"] = "private-message"
    message: ChatMessage
    client_token: str | None = None


class MessageReadEvent(CamelModel):
    type: Literal["message-read"] = "message-read"
    room: str
    id: str
    connection_id: str
    display_name: str


class DepartureNoticeEvent(CamelModel):
    type: Literal["departure-notice"] = "departure-notice"
    room: str
    connection_id: str
    display_name: str


class OperationFailedEvent(CamelModel):
    type: Literal["operation-failed"] = "operation-failed"
    action: str
    reason: FailureReason
    client_token: str | None = None


OutboundEvent = Union[
    ConnectedEvent,
    PresenceSnapshotEvent,
    RoomHistoryEvent,
    RoomJoinedEvent,
    UserJoinedEvent,
    NewMessageEvent,
    MessageEditedEvent,
    MessageDeletedEvent,
    TypingSnapshotEvent,
    ReactionAddedEvent,
    PrivateMessageDeliveredEvent,
    MessageReadEvent,
    DepartureNoticeEvent,
    OperationFailedEvent,
]
