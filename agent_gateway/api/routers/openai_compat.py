"""OpenAI 兼容的 /v1/chat/completions 接口。

请求头 X-Session-Id 指向已有会话时，最后一条用户消息和最终回答会写入该会话；
不带该请求头时为无状态调用。
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse

from agent_gateway.api.dependencies import get_service
from agent_gateway.api.schemas import OpenAIChatRequest
from agent_gateway.api.service import ChatService

router = APIRouter(tags=["openai"])


@router.post("/v1/chat/completions")
async def chat_completions(
    body: OpenAIChatRequest,
    x_session_id: Optional[str] = Header(default=None),
    service: ChatService = Depends(get_service),
):
    if body.stream:
        return StreamingResponse(
            service.stream_openai(body, session_id=x_session_id),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )
    return await service.complete_openai(body, session_id=x_session_id)
