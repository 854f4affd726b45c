"""
app.schemas.messages
~~~~~~~~~~~~~~~~~~~~

聊天领域模型 —— 消息、表情回应、在线用户档案，以及 REST 响应数据。

线上（WebSocket / REST）字段一律使用 camelCase，Python 侧使用 snake_case，
由 ``CamelModel`` 的别名生成器统一转换。
"""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """所有对外模型的基类：序列化为 camelCase，同时允许按字段名构造。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """导出为可直接 ``send_json`` 的字典。"""
        return self.model_dump(mode="json", by_alias=True)


class Reaction(CamelModel):
    """一条表情回应，按添加顺序保存在消息上。"""

    emoji: str = Field(..., description="表情字符")
    reactor_id: str = Field(..., description="回应者的连接 ID")


class ChatMessage(CamelModel):
    """一条已持久化的聊天消息。

    ``id`` 由存储层在创建时分配，之后的编辑 / 删除 / 回应都以它为准。
    发送者断开后 ``sender_connection_id`` 仍作为历史署名保留。
    """

    id: str = Field(..., description="存储层分配的消息 ID")
    room: str | None = Field(default=None, description="所属房间；私信为 None")
    sender_display_name: str = Field(..., description="发送者昵称")
    sender_connection_id: str = Field(..., description="发送者连接 ID")
    content: str = Field(default="", description="消息文本")
    image: str | None = Field(default=None, description="可选图片（data URL 或链接）")
    created_at: datetime = Field(..., description="创建时间（UTC）")
    edited: bool = Field(default=False, description="是否被编辑过")
    reactions: list[Reaction] = Field(default_factory=list, description="表情回应列表")
    is_private: bool = Field(default=False, description="是否为私信")
    recipient_id: str | None = Field(default=None, description="私信接收者连接 ID")


class UserProfile(CamelModel):
    """一个在线连接的用户档案。"""

    connection_id: str
    display_name: str


class RoomInfoData(CamelModel):
    """房间摘要信息。"""

    room: str = Field(..., description="房间名")
    member_count: int = Field(..., description="当前成员连接数")


class HistoryResponseData(CamelModel):
    """历史消息响应数据。"""

    room: str = Field(..., description="房间名")
    messages: list[ChatMessage] = Field(..., description="消息列表（按时间正序）")
    total: int = Field(..., description="本次返回条数")
