"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 统一使用内存消息仓库，测试无需 MongoDB。
"""
from __future__ import annotations

import asyncio
import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["STORAGE_BACKEND"] = "memory"

from app.db.memory_repository import InMemoryMessageRepository  # noqa: E402
from app.db.message_repository import MessageDraft, PersistenceError  # noqa: E402
from app.schemas.messages import ChatMessage, Reaction  # noqa: E402
from app.services.broker import ChatBroker  # noqa: E402
from app.services.connection import Connection  # noqa: E402


def drain(connection: Connection) -> list[dict]:
    """取出连接出站队列中已有的全部事件（忽略关闭信号）。"""
    events: list[dict] = []
    while not connection.outbox.empty():
        item = connection.outbox.get_nowait()
        if item is not None:
            events.append(item)
    return events


def of_type(events: list[dict], event_type: str) -> list[dict]:
    return [e for e in events if e["type"] == event_type]


async def identified(broker: ChatBroker, name: str, *rooms: str) -> Connection:
    """建立连接、登记昵称并加入给定房间，清空期间产生的事件。"""
    connection = broker.connect()
    await broker.handle_raw(connection.id, {"type": "identify", "displayName": name})
    for room in rooms:
        await broker.handle_raw(connection.id, {"type": "join-room", "room": room})
    drain(connection)
    return connection


class FailingRepository(InMemoryMessageRepository):
    """写操作全部失败的仓库，模拟存储不可用。"""

    async def append(self, draft: MessageDraft) -> ChatMessage:
        raise PersistenceError("store unavailable")

    async def update_content(self, message_id: str, content: str, room: str) -> ChatMessage | None:
        raise PersistenceError("store unavailable")

    async def remove(self, message_id: str, room: str) -> bool:
        raise PersistenceError("store unavailable")

    async def add_reaction(self, message_id: str, room: str, reaction: Reaction) -> ChatMessage | None:
        raise PersistenceError("store unavailable")


class GatedRepository(InMemoryMessageRepository):
    """写操作在 ``gate`` 打开前挂起，用于构造"存储调用进行中"的时序。"""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def _wait(self) -> None:
        self.entered.set()
        await self.gate.wait()

    async def append(self, draft: MessageDraft) -> ChatMessage:
        await self._wait()
        return await super().append(draft)

    async def update_content(self, message_id: str, content: str, room: str) -> ChatMessage | None:
        await self._wait()
        return await super().update_content(message_id, content, room)

    async def remove(self, message_id: str, room: str) -> bool:
        await self._wait()
        return await super().remove(message_id, room)


@pytest.fixture()
def repo() -> InMemoryMessageRepository:
    return InMemoryMessageRepository()


@pytest.fixture()
def broker(repo: InMemoryMessageRepository) -> ChatBroker:
    return ChatBroker(repo, history_limit=50)
