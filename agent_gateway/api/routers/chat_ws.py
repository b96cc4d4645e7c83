"""WebSocket 实时对话接口。

协议：
  - 客户端发送 {"type": "message", "content": "...", "stream": true} 开始一次生成，
    {"type": "cancel"} 取消当前生成。
  - 服务端发送 {"type": "chunk" | "done" | "error" | "status", "content": "..."}。
  - 会话不存在时以 4404 关闭连接。

每个连接同一时刻只有一个生成任务，新消息会直接取代旧任务。
"""

import asyncio
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from agent_gateway.agents.supervisor import ConnectionSupervisor
from agent_gateway.api.dependencies import get_service
from agent_gateway.api.framing import ws_event
from agent_gateway.api.schemas import WsClientMessage
from agent_gateway.api.service import ChatService
from agent_gateway.domain.exceptions import BusinessError
from agent_gateway.infrastructure.logging.logger import log_event

router = APIRouter()

SESSION_NOT_FOUND_CLOSE_CODE = 4404


@router.websocket("/ws/chat/{session_id}")
async def websocket_chat(ws: WebSocket, session_id: str):
    service = get_service(ws)
    if service.store.get_session(session_id) is None:
        await ws.close(code=SESSION_NOT_FOUND_CLOSE_CODE, reason="Session not found")
        return

    await ws.accept()
    log_ctx = {"connection_id": f"ws-{uuid4().hex}", "session_id": session_id}
    log_event(logging.INFO, "WebSocket connection established", log_ctx)
    send_lock = asyncio.Lock()

    async def emit(kind: str, content: str = "") -> None:
        # 生成任务与取消处理可能同时发送
        async with send_lock:
            await ws.send_json(ws_event(kind, content))

    supervisor = ConnectionSupervisor(emit, connection_id=log_ctx["connection_id"])
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = WsClientMessage.model_validate_json(raw)
            except PydanticValidationError:
                log_event(logging.WARNING, "Ignored malformed websocket message", log_ctx)
                continue
            if msg.type == "message":
                supervisor.start(_run_turn(service, session_id, msg.content, msg.stream, emit, log_ctx))
            elif msg.type == "cancel":
                await supervisor.cancel()
    except WebSocketDisconnect:
        pass
    finally:
        await supervisor.close()
        log_event(logging.INFO, "WebSocket connection closed", log_ctx)


async def _run_turn(service: ChatService, session_id: str, content: str, stream: bool, emit, log_ctx: dict) -> None:
    """一次完整的生成：流式逐块发送，非流式运行工具循环后一次性发送。"""
    try:
        if stream:
            await service.stream_message(session_id, content, lambda token: emit("chunk", token))
        else:
            record = await service.send_message(
                session_id,
                "user",
                content,
                on_status=lambda text: emit("status", text),
            )
            await emit("chunk", record.content)
    except BusinessError as exc:
        log_event(logging.ERROR, "Generation failed", log_ctx, code=exc.code, error=exc.message)
        await emit("error", exc.message)
    except Exception as exc:
        # 取消（CancelledError）不在此处理，由 supervisor 负责发送 status 与 done
        log_event(logging.ERROR, "Generation crashed", log_ctx, error=repr(exc))
        await emit("error", str(exc) or type(exc).__name__)
    await emit("done")
