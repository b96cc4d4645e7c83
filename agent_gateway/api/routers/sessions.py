"""会话与消息的 REST 接口，以及纯文本导入/导出。"""

from typing import List

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, Response

from agent_gateway.api.dependencies import get_service
from agent_gateway.api.schemas import (
    MessageCreate,
    MessageOut,
    SessionCreate,
    SessionOut,
    SessionUpdate,
    StatsOut,
)
from agent_gateway.api.service import ChatService
from agent_gateway.domain.exceptions import SessionNotFoundError, ValidationError
from agent_gateway.domain.models import ChatMessage
from agent_gateway.infrastructure.storage.transcript_text import export_transcript, import_transcript

router = APIRouter(prefix="/sessions", tags=["sessions"])

EXPORT_MESSAGE_LIMIT = 1000


@router.post("", response_model=SessionOut, status_code=201)
async def create_session(body: SessionCreate, service: ChatService = Depends(get_service)):
    session = service.store.create_session(body.name, body.metadata)
    return SessionOut.from_domain(session)


@router.get("", response_model=List[SessionOut])
async def list_sessions(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: ChatService = Depends(get_service),
):
    return [SessionOut.from_domain(s) for s in service.store.list_sessions(limit=limit, offset=offset)]


@router.get("/stats", response_model=StatsOut)
async def get_stats(service: ChatService = Depends(get_service)):
    return StatsOut.from_domain(service.store.stats())


@router.post("/import", response_model=SessionOut, status_code=201)
async def import_session(request: Request, service: ChatService = Depends(get_service)):
    """导入 export 接口产出的文本（text/plain 请求体），创建新会话并按顺序写入消息。"""
    try:
        text = (await request.body()).decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError(code="INVALID_IMPORT", message="Transcript must be UTF-8 text")
    name, entries = import_transcript(text)
    for role, content in entries:
        ChatMessage(role=role, content=content)
    session = service.store.create_session(name, {})
    for role, content in entries:
        if content:
            service.store.insert_message(session.id, role, content)
    return SessionOut.from_domain(service.store.get_session(session.id))


@router.get("/{session_id}", response_model=SessionOut)
async def get_session(session_id: str, service: ChatService = Depends(get_service)):
    return SessionOut.from_domain(service.require_session(session_id))


@router.patch("/{session_id}", response_model=SessionOut)
async def update_session(session_id: str, body: SessionUpdate, service: ChatService = Depends(get_service)):
    session = service.store.update_session(session_id, name=body.name, metadata=body.metadata)
    if session is None:
        raise SessionNotFoundError(session_id)
    return SessionOut.from_domain(session)


@router.delete("/{session_id}", status_code=204)
async def delete_session(session_id: str, service: ChatService = Depends(get_service)):
    if not service.store.delete_session(session_id):
        raise SessionNotFoundError(session_id)
    return Response(status_code=204)


@router.post("/{session_id}/messages", response_model=MessageOut, status_code=201)
async def add_message(session_id: str, body: MessageCreate, service: ChatService = Depends(get_service)):
    """保存一条消息。用户消息会触发一次完整的工具循环，返回最终的 assistant 消息。"""
    record = await service.send_message(
        session_id,
        body.role,
        body.content,
        model=body.model,
        metadata=body.metadata,
    )
    return MessageOut.from_domain(record)


@router.get("/{session_id}/messages", response_model=List[MessageOut])
async def list_messages(
    session_id: str,
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    service: ChatService = Depends(get_service),
):
    service.require_session(session_id)
    return [MessageOut.from_domain(m) for m in service.store.list_messages(session_id, limit=limit, offset=offset)]


@router.get("/{session_id}/export", response_class=PlainTextResponse)
async def export_session(session_id: str, service: ChatService = Depends(get_service)):
    session = service.require_session(session_id)
    messages = service.store.list_messages(session_id, limit=EXPORT_MESSAGE_LIMIT)
    return PlainTextResponse(
        export_transcript(session, messages),
        headers={"Content-Disposition": f'attachment; filename="session_{session_id}.txt"'},
    )
