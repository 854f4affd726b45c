"""
app.schemas
~~~~~~~~~~~
Pydantic schemas：REST 应答体、聊天领域模型与 WebSocket 事件契约。
"""
from app.schemas.api_response import ApiResponse
from app.schemas.messages import (
    ChatMessage,
    HistoryResponseData,
    Reaction,
    RoomInfoData,
    UserProfile,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
