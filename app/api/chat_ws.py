"""
app.api.chat_ws
~~~~~~~~~~~~~~~

WebSocket 实时通道 —— ``/ws``。

每条连接由三个协程协作:
  - 接收协程：读取文本帧放入有界队列，队列满时直接告知客户端并丢弃；
  - 处理协程：按到达顺序把帧交给 ``ChatBroker``，单个事件出错不会断开连接；
  - 发送协程：把 broker 放入出站队列的事件逐条写回客户端。

无论以何种方式结束，都会调用 ``broker.disconnect()`` 完成清理。
"""
from __future__ import annotations

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.logging import get_logger, request_id_ctx_var
from app.core.settings import settings
from app.schemas.events import FailureReason, OperationFailedEvent, guess_action
from app.services.broker import ChatBroker

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket 聊天端点。

    协议见 ``app.schemas.events``：每帧一个带 ``type`` 字段的 JSON 对象。
    建立连接后服务端首先发送 ``connected`` 事件告知连接 ID。
    """
    broker: ChatBroker = websocket.app.state.broker
    await websocket.accept()
    connection = broker.connect()
    token = request_id_ctx_var.set(f"ws-{connection.id[:8]}")

    # 用于隔离接收与处理的队列，处理再慢也不会阻塞接收
    queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=settings.WS_INBOUND_QUEUE_SIZE)

    async def receive_loop() -> None:
        try:
            while True:
                raw: str = await websocket.receive_text()
                try:
                    queue.put_nowait(raw)
                except asyncio.QueueFull:
                    connection.send(OperationFailedEvent(
                        action=guess_action(raw),
                        reason=FailureReason.RATE_LIMITED,
                    ).to_wire())
                    logger.warning("WS 队列已满，丢弃事件 | conn=%s", connection.id)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 接收异常: %s | conn=%s", e, connection.id, exc_info=True)
        finally:
            await queue.put(None)  # 发送结束信号给处理协程

    async def process_loop() -> None:
        try:
            while True:
                raw = await queue.get()
                if raw is None:
                    break
                try:
                    await broker.handle_raw(connection.id, raw)
                except Exception as e:
                    logger.error("事件处理异常: %s | conn=%s", e, connection.id, exc_info=True)
        finally:
            # 关闭出站队列，发送协程写完剩余事件后退出
            broker.disconnect(connection.id)

    async def send_loop() -> None:
        while True:
            payload = await connection.outbox.get()
            if payload is None:
                break
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.warning("推送失败，关闭连接: %s | conn=%s", e, connection.id)
                broker.disconnect(connection.id)
                break

    try:
        await asyncio.gather(receive_loop(), process_loop(), send_loop())
    finally:
        broker.disconnect(connection.id)
        request_id_ctx_var.reset(token)
