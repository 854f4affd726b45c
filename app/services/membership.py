"""
app.services.membership
~~~~~~~~~~~~~~~~~~~~~~~

房间成员表 —— 连接 ↔ 房间的双向映射。

房间不需要显式创建：只要还有成员就存在，最后一个成员离开时自动消失。
每个连接可以加入多个房间，最近一次加入（或重新加入）的房间是它的
"当前房间"，用于省略 ``room`` 字段的事件。
"""
from __future__ import annotations


class RoomMembership:
    """连接与房间的成员关系表。"""

    def __init__(self) -> None:
        self._members: dict[str, set[str]] = {}
        # 连接 ID → 已加入房间（dict 保持顺序，末尾即当前房间）
        self._rooms: dict[str, dict[str, None]] = {}

    def join(self, connection_id: str, room: str) -> bool:
        """加入房间并把它设为当前房间。返回是否为首次加入。"""
        joined = self._rooms.setdefault(connection_id, {})
        first_time = room not in joined
        joined.pop(room, None)
        joined[room] = None
        self._members.setdefault(room, set()).add(connection_id)
        return first_time

    def leave(self, connection_id: str, room: str) -> bool:
        """离开房间。返回之前是否确实在房间内。"""
        joined = self._rooms.get(connection_id)
        if not joined or room not in joined:
            return False
        del joined[room]
        if not joined:
            del self._rooms[connection_id]
        members = self._members[room]
        members.discard(connection_id)
        if not members:
            del self._members[room]
        return True

    def leave_all(self, connection_id: str) -> list[str]:
        """离开所有房间，返回离开前所在的房间（按加入顺序）。"""
        rooms = list(self._rooms.get(connection_id, {}))
        for room in rooms:
            self.leave(connection_id, room)
        return rooms

    def members_of(self, room: str) -> set[str]:
        return set(self._members.get(room, ()))

    def rooms_of(self, connection_id: str) -> list[str]:
        return list(self._rooms.get(connection_id, {}))

    def is_member(self, connection_id: str, room: str) -> bool:
        return room in self._rooms.get(connection_id, {})

    def active_room(self, connection_id: str) -> str | None:
        joined = self._rooms.get(connection_id)
        if not joined:
            return None
        return next(reversed(joined))

    def room_sizes(self) -> dict[str, int]:
        """当前存在的房间及其成员数。"""
        return {room: len(members) for room, members in self._members.items()}
