"""
app.db.message_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

消息持久化端口 + MongoDB 实现。

``MessageRepository`` 是 broker 依赖的唯一存储契约：追加、按房间查询、
改内容、删除、追加表情回应。找不到目标消息时返回 ``None`` / ``False``，
存储本身不可用时抛出 ``PersistenceError``，两者语义严格区分。

``MongoMessageRepository`` 把每条消息存为 ``messages`` 集合中的一个文档，
集合在首次操作时惰性建立 ``(room, created_at)`` 复合索引。
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Protocol

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from app.core.logging import get_logger
from app.schemas.messages import ChatMessage, Reaction

logger = get_logger(__name__)

_COLLECTION_NAME = "messages"


class PersistenceError(RuntimeError):
    """存储不可用或写入失败。可安全重试。"""


class MessageDraft(BaseModel):
    """尚未分配 ID 的新消息。"""

    room: str | None
    sender_display_name: str
    sender_connection_id: str
    content: str = ""
    image: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_private: bool = False
    recipient_id: str | None = None


class MessageRepository(Protocol):
    """broker 使用的消息存储契约。"""

    async def append(self, draft: MessageDraft) -> ChatMessage: ...

    async def list_by_room(self, room: str, limit: int) -> list[ChatMessage]: ...

    async def update_content(
        self, message_id: str, content: str, room: str,
    ) -> ChatMessage | None: ...

    async def remove(self, message_id: str, room: str) -> bool: ...

    async def add_reaction(
        self, message_id: str, room: str, reaction: Reaction,
    ) -> ChatMessage | None: ...


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """把驱动层异常统一转换为 ``PersistenceError``。"""
    try:
        yield
    except PyMongoError as e:
        logger.warning("MongoDB 操作失败 | action=%s | %s", action, e, exc_info=True)
        raise PersistenceError(f"{action} failed: {e}") from e


def _to_message(doc: dict[str, Any]) -> ChatMessage:
    return ChatMessage(
        id=str(doc["_id"]),
        room=doc.get("room"),
        sender_display_name=doc["sender_display_name"],
        sender_connection_id=doc["sender_connection_id"],
        content=doc.get("content", ""),
        image=doc.get("image"),
        created_at=doc["created_at"],
        edited=doc.get("edited", False),
        reactions=[
            Reaction(emoji=r["emoji"], reactor_id=r["reactor_id"])
            for r in doc.get("reactions", [])
        ],
        is_private=doc.get("is_private", False),
        recipient_id=doc.get("recipient_id"),
    )


def _room_filter(message_id: str, room: str) -> dict[str, Any] | None:
    """构造按 ID + 房间定位的查询条件；非法 ObjectId 视为不存在。"""
    if not ObjectId.is_valid(message_id):
        return None
    return {"_id": ObjectId(message_id), "room": room}


class MongoMessageRepository:
    """基于 MongoDB 的消息仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        # 复合索引：按房间分区 + 按时间排序
        await self._collection.create_index(
            [("room", 1), ("created_at", 1)],
            name="idx_room_time",
        )
        self._indexes_created = True
        logger.debug("messages 索引已就绪")

    async def append(self, draft: MessageDraft) -> ChatMessage:
        """写入一条新消息并返回带 ID 的完整记录。"""
        with _translate_errors("append"):
            await self._ensure_indexes()
            doc = draft.model_dump()
            doc["edited"] = False
            doc["reactions"] = []
            result = await self._collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _to_message(doc)

    async def list_by_room(self, room: str, limit: int) -> list[ChatMessage]:
        """获取指定房间最近 ``limit`` 条消息（按时间正序）。"""
        with _translate_errors("list_by_room"):
            await self._ensure_indexes()
            # 先按时间倒序取最近 N 条，再反转为正序；同一时间戳按 _id 排
            cursor = (
                self._collection
                .find({"room": room})
                .sort([("created_at", -1), ("_id", -1)])
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        docs.reverse()
        return [_to_message(doc) for doc in docs]

    async def update_content(
        self, message_id: str, content: str, room: str,
    ) -> ChatMessage | None:
        """修改消息内容并标记为已编辑；消息不存在时返回 ``None``。"""
        query = _room_filter(message_id, room)
        if query is None:
            return None
        with _translate_errors("update_content"):
            doc = await self._collection.find_one_and_update(
                query,
                {"$set": {"content": content, "edited": True}},
                return_document=ReturnDocument.AFTER,
            )
        return _to_message(doc) if doc else None

    async def remove(self, message_id: str, room: str) -> bool:
        """硬删除一条消息；返回是否真的删掉了。"""
        query = _room_filter(message_id, room)
        if query is None:
            return False
        with _translate_errors("remove"):
            result = await self._collection.delete_one(query)
        return result.deleted_count > 0

    async def add_reaction(
        self, message_id: str, room: str, reaction: Reaction,
    ) -> ChatMessage | None:
        """在消息的回应列表末尾追加一条回应。"""
        query = _room_filter(message_id, room)
        if query is None:
            return None
        with _translate_errors("add_reaction"):
            doc = await self._collection.find_one_and_update(
                query,
                {"$push": {"reactions": reaction.model_dump()}},
                return_document=ReturnDocument.AFTER,
            )
        return _to_message(doc) if doc else None
