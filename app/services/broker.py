"""
app.services.broker
~~~~~~~~~~~~~~~~~~~

房间级实时消息代理 —— 校验入站事件、修改在线状态 / 成员表、调用存储，
并把结果扇出到正确的连接集合。

并发模型:
  - 单事件循环；内存状态的修改与随后的快照计算之间没有 ``await``，
    因此每个事件对内存状态都是原子的。
  - 涉及存储的操作（发消息、编辑、删除、回应、加入时拉历史）持有该房间的
    ``asyncio.Lock``，存储完成与扇出严格按受理顺序进行；不同房间互不阻塞。
    锁在无人持有也无人等待时即被回收。
  - 扇出只是往各连接的出站队列里同步入队，已断开的连接直接跳过。

连接生命周期:
  ``connect()`` 登记连接并告知其 ID；``disconnect()`` 清理档案、成员关系、
  输入状态并向受影响的房间发送离开通知和最新快照，可重复调用。
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from pydantic import ValidationError

from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import settings
from app.db.message_repository import MessageDraft, MessageRepository, PersistenceError
from app.schemas.events import (
    AddReactionEvent,
    ConnectedEvent,
    DeleteMessageEvent,
    DepartureNoticeEvent,
    EditMessageEvent,
    FailureReason,
    IdentifyEvent,
    InboundEvent,
    JoinRoomEvent,
    LeaveRoomEvent,
    MarkReadEvent,
    MessageDeletedEvent,
    MessageEditedEvent,
    MessageReadEvent,
    NewMessageEvent,
    OperationFailedEvent,
    OutboundEvent,
    PresenceSnapshotEvent,
    PrivateMessageDeliveredEvent,
    PrivateMessageEvent,
    ReactionAddedEvent,
    RoomHistoryEvent,
    RoomJoinedEvent,
    SendMessageEvent,
    TypingEvent,
    TypingSnapshotEvent,
    UserJoinedEvent,
    guess_action,
    parse_inbound_event,
)
from app.schemas.messages import Reaction, UserProfile
from app.services.connection import Connection, ConnectionRegistry, ConnectionState
from app.services.membership import RoomMembership
from app.services.presence import PresenceRegistry

logger = get_logger(__name__)

Handler = Callable[[str, InboundEvent], Awaitable[None]]


class ChatBroker:
    """房间级消息代理。

    在线状态、成员表和连接表都通过构造参数注入，并且只在本类的事件处理
    方法中被修改，测试时可以直接检查它们。

    Attributes:
        repo: 消息存储。
        presence: 在线用户与输入状态。
        membership: 房间成员表。
        connections: 在线连接表。
        history_limit: 加入房间时回放的历史条数。
        rate_limiter: 发言限流器，为 ``None`` 时不限流。
    """

    def __init__(
        self,
        repo: MessageRepository,
        *,
        presence: PresenceRegistry | None = None,
        membership: RoomMembership | None = None,
        connections: ConnectionRegistry | None = None,
        history_limit: int | None = None,
        rate_limiter: WebSocketRateLimiter | None = None,
    ) -> None:
        self.repo = repo
        self.presence = presence or PresenceRegistry()
        self.membership = membership or RoomMembership()
        self.connections = connections or ConnectionRegistry()
        self.history_limit = history_limit or settings.HISTORY_LIMIT
        self.rate_limiter = rate_limiter
        self._locks: dict[str, _KeyedLock] = {}
        self._handlers: dict[str, Handler] = {
            "identify": self._on_identify,
            "join-room": self._on_join_room,
            "leave-room": self._on_leave_room,
            "send-message": self._on_send_message,
            "edit-message": self._on_edit_message,
            "delete-message": self._on_delete_message,
            "typing": self._on_typing,
            "add-reaction": self._on_add_reaction,
            "private-message": self._on_private_message,
            "mark-read": self._on_mark_read,
        }

    # ── 连接生命周期 ──────────────────────────────────────────────────

    def connect(self) -> Connection:
        """登记一条新连接，并把分配到的 ID 发给它。"""
        connection = self.connections.open()
        connection.send(ConnectedEvent(connection_id=connection.id).to_wire())
        logger.info("连接建立 | conn=%s | 在线: %d", connection.id, self.connections.online_count)
        return connection

    def disconnect(self, connection_id: str) -> None:
        """断开清理。重复调用不会报错，也不会重复发送离开通知。"""
        if self.connections.close(connection_id) is None:
            return

        profile = self.presence.remove_profile(connection_id)
        typing_rooms = set(self.presence.clear_typing(connection_id))
        rooms = self.membership.leave_all(connection_id)
        if self.rate_limiter is not None:
            self.rate_limiter.remove_client(connection_id)

        for room in rooms:
            if profile is not None:
                self._fan_out(room, DepartureNoticeEvent(
                    room=room,
                    connection_id=connection_id,
                    display_name=profile.display_name,
                ))
            self._fan_out(room, self._presence_snapshot(room))
            if room in typing_rooms:
                self._fan_out(room, self._typing_snapshot(room))

        logger.info(
            "连接断开 | conn=%s | name=%s | rooms=%s | 在线: %d",
            connection_id,
            profile.display_name if profile else "-",
            rooms,
            self.connections.online_count,
        )

    def state_of(self, connection_id: str) -> ConnectionState:
        if not self.connections.is_live(connection_id):
            return ConnectionState.DISCONNECTED
        if self.presence.get_profile(connection_id) is None:
            return ConnectionState.CONNECTED_ANONYMOUS
        return ConnectionState.IDENTIFIED

    # ── 事件入口 ──────────────────────────────────────────────────────

    async def handle_raw(self, connection_id: str, raw: str | bytes | dict) -> None:
        """校验一帧原始数据并处理；不合法时只回复发送方。"""
        try:
            event = parse_inbound_event(raw)
        except ValidationError as e:
            logger.debug("非法事件 | conn=%s | %s", connection_id, e.errors(include_url=False))
            self._fail(connection_id, guess_action(raw), FailureReason.INVALID_PAYLOAD)
            return
        await self.handle(connection_id, event)

    async def handle(self, connection_id: str, event: InboundEvent) -> None:
        """处理一个已校验的入站事件。"""
        if not self.connections.is_live(connection_id):
            logger.debug("丢弃已断开连接的事件 | conn=%s | type=%s", connection_id, event.type)
            return
        logger.debug("收到事件 | conn=%s | type=%s", connection_id, event.type)
        await self._handlers[event.type](connection_id, event)

    # ── 事件处理 ──────────────────────────────────────────────────────

    async def _on_identify(self, connection_id: str, event: IdentifyEvent) -> None:
        """登记或修改昵称。

        在线列表按房间划分，首次登记时连接尚未加入任何房间，因此不发送任何事件；
        成员看到新用户要等到它 ``join-room``。
        """
        self.presence.set_profile(connection_id, event.display_name)
        logger.info("用户登记 | conn=%s | name=%s", connection_id, event.display_name)
        # 改名：刷新所在房间的在线列表与输入列表
        for room in self.membership.rooms_of(connection_id):
            self._fan_out(room, self._presence_snapshot(room))
            if self.presence.is_typing(connection_id, room):
                self._fan_out(room, self._typing_snapshot(room))

    async def _on_join_room(self, connection_id: str, event: JoinRoomEvent) -> None:
        room = event.room
        profile = self._require_profile(connection_id, event.type)
        if profile is None:
            return

        async with self._serialized(room):
            try:
                history = await self.repo.list_by_room(room, self.history_limit)
            except PersistenceError:
                self._fail(connection_id, event.type, FailureReason.PERSISTENCE_UNAVAILABLE)
                return
            # 拉历史期间已断开：不能留下指向死连接的成员关系
            if not self.connections.is_live(connection_id):
                return

            first_time = self.membership.join(connection_id, room)
            self._deliver(connection_id, RoomJoinedEvent(room=room))
            self._deliver(connection_id, RoomHistoryEvent(room=room, messages=history))
            if first_time:
                self._fan_out(room, UserJoinedEvent(
                    room=room,
                    connection_id=connection_id,
                    display_name=profile.display_name,
                ))
            self._fan_out(room, self._presence_snapshot(room))
            if self.presence.list_typing(room):
                self._deliver(connection_id, self._typing_snapshot(room))

        logger.info("加入房间 | conn=%s | room=%s | 历史: %d", connection_id, room, len(history))

    async def _on_leave_room(self, connection_id: str, event: LeaveRoomEvent) -> None:
        room = event.room
        if not self.membership.leave(connection_id, room):
            return
        was_typing = self.presence.set_typing(connection_id, room, None)
        self._fan_out(room, self._presence_snapshot(room))
        if was_typing:
            self._fan_out(room, self._typing_snapshot(room))
        logger.info("离开房间 | conn=%s | room=%s", connection_id, room)

    async def _on_send_message(self, connection_id: str, event: SendMessageEvent) -> None:
        room = self._require_member(connection_id, event.type, event.room, event.client_token)
        if room is None:
            return
        if not self._allow_message(connection_id, event.type, event.client_token):
            return
        profile = self.presence.get_profile(connection_id)
        draft = MessageDraft(
            room=room,
            sender_display_name=profile.display_name,
            sender_connection_id=connection_id,
            content=event.content,
            image=event.image,
        )

        async with self._serialized(room):
            try:
                message = await self.repo.append(draft)
            except PersistenceError:
                self._fail(
                    connection_id, event.type,
                    FailureReason.PERSISTENCE_UNAVAILABLE, event.client_token,
                )
                return
            self._fan_out(room, NewMessageEvent(message=message, client_token=event.client_token))
            if self.presence.set_typing(connection_id, room, None):
                self._fan_out(room, self._typing_snapshot(room))

        logger.debug("新消息 | room=%s | id=%s", room, message.id)

    async def _on_edit_message(self, connection_id: str, event: EditMessageEvent) -> None:
        room = self._require_member(connection_id, event.type, event.room)
        if room is None:
            return

        async with self._serialized(room):
            try:
                updated = await self.repo.update_content(event.id, event.content, room)
            except PersistenceError:
                self._fail(connection_id, event.type, FailureReason.PERSISTENCE_UNAVAILABLE)
                return
            if updated is None:
                logger.debug("编辑目标不存在 | room=%s | id=%s", room, event.id)
                return
            self._fan_out(room, MessageEditedEvent(room=room, id=updated.id, content=updated.content))

    async def _on_delete_message(self, connection_id: str, event: DeleteMessageEvent) -> None:
        room = self._require_member(connection_id, event.type, event.room)
        if room is None:
            return

        async with self._serialized(room):
            try:
                removed = await self.repo.remove(event.id, room)
            except PersistenceError:
                self._fail(connection_id, event.type, FailureReason.PERSISTENCE_UNAVAILABLE)
                return
            if not removed:
                logger.debug("删除目标不存在 | room=%s | id=%s", room, event.id)
                return
            self._fan_out(room, MessageDeletedEvent(room=room, id=event.id))

    async def _on_typing(self, connection_id: str, event: TypingEvent) -> None:
        room = self._require_member(connection_id, event.type, event.room)
        if room is None:
            return
        profile = self.presence.get_profile(connection_id)
        self.presence.set_typing(
            connection_id, room, profile.display_name if event.is_typing else None,
        )
        self._fan_out(room, self._typing_snapshot(room))

    async def _on_add_reaction(self, connection_id: str, event: AddReactionEvent) -> None:
        room = self._require_member(connection_id, event.type, event.room)
        if room is None:
            return
        reaction = Reaction(emoji=event.emoji, reactor_id=connection_id)

        async with self._serialized(room):
            try:
                updated = await self.repo.add_reaction(event.id, room, reaction)
            except PersistenceError:
                self._fail(connection_id, event.type, FailureReason.PERSISTENCE_UNAVAILABLE)
                return
            if updated is None:
                return
            self._fan_out(room, ReactionAddedEvent(
                room=room,
                id=updated.id,
                emoji=reaction.emoji,
                reactor_id=connection_id,
                reactions=updated.reactions,
            ))

    async def _on_private_message(self, connection_id: str, event: PrivateMessageEvent) -> None:
        profile = self._require_profile(connection_id, event.type, event.client_token)
        if profile is None:
            return
        if self.presence.get_profile(event.to) is None:
            self._fail(
                connection_id, event.type,
                FailureReason.UNKNOWN_RECIPIENT, event.client_token,
            )
            return
        if not self._allow_message(connection_id, event.type, event.client_token):
            return
        draft = MessageDraft(
            room=None,
            sender_display_name=profile.display_name,
            sender_connection_id=connection_id,
            content=event.content,
            is_private=True,
            recipient_id=event.to,
        )

        async with self._serialized(_conversation_key(connection_id, event.to)):
            try:
                message = await self.repo.append(draft)
            except PersistenceError:
                self._fail(
                    connection_id, event.type,
                    FailureReason.PERSISTENCE_UNAVAILABLE, event.client_token,
                )
                return
            delivered = PrivateMessageDeliveredEvent(message=message, client_token=event.client_token)
            for target in dict.fromkeys((event.to, connection_id)):
                self._deliver(target, delivered)

    async def _on_mark_read(self, connection_id: str, event: MarkReadEvent) -> None:
        room = self._require_member(connection_id, event.type, event.room)
        if room is None:
            return
        profile = self.presence.get_profile(connection_id)
        self._fan_out(room, MessageReadEvent(
            room=room,
            id=event.id,
            connection_id=connection_id,
            display_name=profile.display_name,
        ))

    # ── 前置条件 ──────────────────────────────────────────────────────

    def _require_profile(
        self, connection_id: str, action: str, client_token: str | None = None,
    ) -> UserProfile | None:
        profile = self.presence.get_profile(connection_id)
        if profile is None:
            self._fail(connection_id, action, FailureReason.NOT_IDENTIFIED, client_token)
        return profile

    def _require_member(
        self,
        connection_id: str,
        action: str,
        room: str | None,
        client_token: str | None = None,
    ) -> str | None:
        """解析目标房间（缺省为当前房间）并确认发起方已加入。"""
        if self._require_profile(connection_id, action, client_token) is None:
            return None
        room = room or self.membership.active_room(connection_id)
        if room is None:
            self._fail(connection_id, action, FailureReason.NO_ACTIVE_ROOM, client_token)
            return None
        if not self.membership.is_member(connection_id, room):
            self._fail(connection_id, action, FailureReason.NOT_A_MEMBER, client_token)
            return None
        return room

    def _allow_message(
        self, connection_id: str, action: str, client_token: str | None,
    ) -> bool:
        if self.rate_limiter is None or self.rate_limiter.is_allowed(connection_id):
            return True
        self._fail(connection_id, action, FailureReason.RATE_LIMITED, client_token)
        return False

    # ── 快照与投递 ────────────────────────────────────────────────────

    def _presence_snapshot(self, room: str) -> PresenceSnapshotEvent:
        members = self.membership.members_of(room)
        return PresenceSnapshotEvent(room=room, users=self.presence.list_profiles(members))

    def _typing_snapshot(self, room: str) -> TypingSnapshotEvent:
        return TypingSnapshotEvent(room=room, users=self.presence.list_typing(room))

    def _deliver(self, connection_id: str, event: OutboundEvent) -> None:
        """投递给单个连接；连接已断开则丢弃。"""
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        connection.send(event.to_wire())

    def _fan_out(self, room: str, event: OutboundEvent) -> None:
        """投递给房间当前的全部成员（在修改之后读取成员表）。"""
        payload = event.to_wire()
        for connection_id in self.membership.members_of(room):
            connection = self.connections.get(connection_id)
            if connection is not None:
                connection.send(payload)

    def _fail(
        self,
        connection_id: str,
        action: str,
        reason: FailureReason,
        client_token: str | None = None,
    ) -> None:
        logger.debug("操作失败 | conn=%s | action=%s | reason=%s", connection_id, action, reason.value)
        self._deliver(connection_id, OperationFailedEvent(
            action=action, reason=reason, client_token=client_token,
        ))

    # ── 房间锁 ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _serialized(self, key: str) -> AsyncIterator[None]:
        """按 ``key``（房间名或私信会话）串行执行。

        锁只在有持有者或等待者时存在，最后一个使用者退出后立即回收，
        因此失败的加入、一次性的私信会话都不会留下锁。
        """
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyedLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    # ── 查询 ──────────────────────────────────────────────────────────

    def list_profiles(self) -> list[UserProfile]:
        """全局在线用户（按加入顺序）。"""
        return self.presence.list_profiles()

    def room_sizes(self) -> dict[str, int]:
        return self.membership.room_sizes()


@dataclass
class _KeyedLock:
    """带引用计数的锁：``users`` 为持有者与等待者的总数。"""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _conversation_key(a: str, b: str) -> str:
    """两人私信会话的锁键，与方向无关。"""
    return "@dm:" + "|".join(sorted((a, b)))
