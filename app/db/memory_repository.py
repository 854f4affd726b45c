"""
app.db.memory_repository
~~~~~~~~~~~~~~~~~~~~~~~~

进程内消息仓库 —— ``STORAGE_BACKEND=memory`` 时使用，也是测试里的默认实现。

单进程、不持久化，重启即丢失。ID 为单调递增的整数字符串，
天然满足同一房间内按创建顺序排列。
"""
from __future__ import annotations

import itertools

from app.db.message_repository import MessageDraft
from app.schemas.messages import ChatMessage, Reaction


class InMemoryMessageRepository:
    """``MessageRepository`` 的内存实现。"""

    def __init__(self) -> None:
        self._messages: dict[str, ChatMessage] = {}
        self._ids = itertools.count(1)

    async def append(self, draft: MessageDraft) -> ChatMessage:
        message = ChatMessage(id=str(next(self._ids)), **draft.model_dump())
        self._messages[message.id] = message
        return message.model_copy(deep=True)

    async def list_by_room(self, room: str, limit: int) -> list[ChatMessage]:
        # dict 保持插入顺序，即创建顺序
        in_room = [m for m in self._messages.values() if m.room == room]
        return [m.model_copy(deep=True) for m in in_room[-limit:]] if limit > 0 else []

    def _find(self, message_id: str, room: str) -> ChatMessage | None:
        message = self._messages.get(message_id)
        if message is None or message.room != room:
            return None
        return message

    async def update_content(
        self, message_id: str, content: str, room: str,
    ) -> ChatMessage | None:
        message = self._find(message_id, room)
        if message is None:
            return None
        message.content = content
        message.edited = True
        return message.model_copy(deep=True)

    async def remove(self, message_id: str, room: str) -> bool:
        if self._find(message_id, room) is None:
            return False
        del self._messages[message_id]
        return True

    async def add_reaction(
        self, message_id: str, room: str, reaction: Reaction,
    ) -> ChatMessage | None:
        message = self._find(message_id, room)
        if message is None:
            return None
        message.reactions.append(reaction)
        return message.model_copy(deep=True)
