"""
app.services.connection
~~~~~~~~~~~~~~~~~~~~~~~

连接登记表 —— 为每条物理连接分配唯一 ID 并持有它的出站队列。

broker 向连接"发送"事件只是把 JSON 字典放进 ``outbox``（同步、不等待网络），
由 WebSocket 端点里的发送协程逐条写出。这样一次广播的所有入队动作
在同一个事件循环步内完成，慢客户端也不会拖住整个房间。
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ConnectionState(str, Enum):
    """连接在 broker 眼中的状态。"""

    CONNECTED_ANONYMOUS = "connected_anonymous"
    IDENTIFIED = "identified"
    DISCONNECTED = "disconnected"


@dataclass
class Connection:
    """一条在线连接。

    Attributes:
        id: 连接 ID，断开后作废且永不复用。
        outbox: 待写出的出站事件；``None`` 是关闭信号。
        connected_at: 建立连接的时间。
    """

    id: str
    outbox: asyncio.Queue[dict | None] = field(default_factory=asyncio.Queue)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def send(self, payload: dict) -> None:
        """把一个出站事件放入队列。"""
        self.outbox.put_nowait(payload)

    def close(self) -> None:
        """通知发送协程退出。"""
        self.outbox.put_nowait(None)


class ConnectionRegistry:
    """所有在线连接的登记表，由 broker 独占。"""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def open(self) -> Connection:
        """登记一条新连接并分配 ID。"""
        connection = Connection(id=uuid.uuid4().hex)
        self._connections[connection.id] = connection
        return connection

    def close(self, connection_id: str) -> Connection | None:
        """注销连接并发出关闭信号；重复调用返回 ``None``。"""
        connection = self._connections.pop(connection_id, None)
        if connection is not None:
            connection.close()
        return connection

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def is_live(self, connection_id: str) -> bool:
        return connection_id in self._connections

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self._connections)
