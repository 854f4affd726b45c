"""
app.api.chat_endpoints
~~~~~~~~~~~~~~~~~~~~~~

聊天 REST 接口 —— 只读，供页面加载 / 补拉历史使用；所有修改都走 WebSocket。

端点:
  - ``GET /messages/{room}``  → 房间最近的历史消息（按时间正序）
  - ``GET /users``            → 全局在线用户（按加入顺序）
  - ``GET /rooms``            → 当前有成员的房间
"""
from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_broker
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.schemas.api_response import ApiResponse
from app.schemas.messages import HistoryResponseData, RoomInfoData, UserProfile
from app.services.broker import ChatBroker

router: APIRouter = APIRouter()


@router.get(
    "/messages/{room}",
    summary="获取房间历史消息",
    response_model=ApiResponse[HistoryResponseData],
)
@limiter.limit("10/second")
async def get_room_messages(
    request: Request,
    room: str,
    limit: int | None = Query(None, ge=1, le=500, description="最多返回条数，缺省为 HISTORY_LIMIT"),
    broker: ChatBroker = Depends(get_broker),
):
    """返回房间最近 ``limit`` 条消息，按时间正序。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        room: 房间名。
        limit: 最多返回条数（1-500）。
    """
    messages = await broker.repo.list_by_room(room, limit or settings.HISTORY_LIMIT)
    return ApiResponse.ok(
        data=HistoryResponseData(room=room, messages=messages, total=len(messages)),
    )


@router.get("/users", summary="获取在线用户", response_model=ApiResponse[list[UserProfile]])
@limiter.limit("10/second")
async def list_users(request: Request, broker: ChatBroker = Depends(get_broker)):
    """返回所有已登记昵称的在线连接。"""
    return ApiResponse.ok(data=broker.list_profiles())


@router.get("/rooms", summary="获取活跃房间", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, broker: ChatBroker = Depends(get_broker)):
    """返回当前至少有一个成员的房间及成员数。"""
    rooms = [
        RoomInfoData(room=room, member_count=count)
        for room, count in broker.room_sizes().items()
    ]
    return ApiResponse.ok(data=rooms)
