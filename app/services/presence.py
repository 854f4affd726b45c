"""
app.services.presence
~~~~~~~~~~~~~~~~~~~~~

在线状态登记表 —— 连接 ID → 用户档案，以及按房间划分的"正在输入"集合。

只由 ``ChatBroker`` 修改。对未知连接 ID 的任何操作都是空操作，
因为断开与事件处理之间的竞态是常态。
"""
from __future__ import annotations

from collections.abc import Iterable

from app.schemas.messages import UserProfile


class PresenceRegistry:
    """在线用户与输入状态。

    ``_profiles`` 依赖 dict 的插入顺序表达"加入顺序"，改名不会改变位置。

    Attributes:
        _profiles: 连接 ID → 用户档案。
        _typing: 房间名 → {连接 ID → 昵称}。
    """

    def __init__(self) -> None:
        self._profiles: dict[str, UserProfile] = {}
        self._typing: dict[str, dict[str, str]] = {}

    # ── 用户档案 ──────────────────────────────────────────────────────

    def set_profile(self, connection_id: str, display_name: str) -> UserProfile:
        """创建或更新档案。改名时同步更新该连接在各房间的输入状态。"""
        profile = self._profiles.get(connection_id)
        if profile is None:
            profile = UserProfile(connection_id=connection_id, display_name=display_name)
            self._profiles[connection_id] = profile
        else:
            profile.display_name = display_name
            for typers in self._typing.values():
                if connection_id in typers:
                    typers[connection_id] = display_name
        return profile

    def remove_profile(self, connection_id: str) -> UserProfile | None:
        return self._profiles.pop(connection_id, None)

    def get_profile(self, connection_id: str) -> UserProfile | None:
        return self._profiles.get(connection_id)

    def list_profiles(
        self, connection_ids: Iterable[str] | None = None,
    ) -> list[UserProfile]:
        """按加入顺序返回档案；传入 ``connection_ids`` 时只返回其中的连接。"""
        if connection_ids is None:
            return [p.model_copy() for p in self._profiles.values()]
        wanted = set(connection_ids)
        return [
            p.model_copy() for cid, p in self._profiles.items() if cid in wanted
        ]

    # ── 输入状态 ──────────────────────────────────────────────────────

    def set_typing(
        self, connection_id: str, room: str, display_name: str | None,
    ) -> bool:
        """设置或清除（``display_name=None``）输入状态，返回状态是否变化。"""
        if display_name is None:
            typers = self._typing.get(room)
            if not typers or connection_id not in typers:
                return False
            del typers[connection_id]
            if not typers:
                del self._typing[room]
            return True

        if connection_id not in self._profiles:
            return False
        typers = self._typing.setdefault(room, {})
        changed = typers.get(connection_id) != display_name
        typers[connection_id] = display_name
        return changed

    def is_typing(self, connection_id: str, room: str) -> bool:
        return connection_id in self._typing.get(room, {})

    def list_typing(self, room: str) -> list[str]:
        """房间内正在输入的昵称（去重，保持开始输入的先后顺序）。"""
        return list(dict.fromkeys(self._typing.get(room, {}).values()))

    def clear_typing(self, connection_id: str) -> list[str]:
        """清除该连接在所有房间的输入状态，返回受影响的房间。"""
        rooms = [room for room, typers in self._typing.items() if connection_id in typers]
        for room in rooms:
            self.set_typing(connection_id, room, None)
        return rooms
