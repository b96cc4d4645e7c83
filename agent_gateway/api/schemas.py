"""HTTP 请求/响应模型（pydantic）。"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from agent_gateway.domain.session import MessageRecord, Session, StoreStats


# ---- 会话 ----

class SessionCreate(BaseModel):
    name: str = Field(default="New Chat", min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionUpdate(BaseModel):
    name: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SessionOut(BaseModel):
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    metadata: Dict[str, Any]

    @classmethod
    def from_domain(cls, session: Session) -> "SessionOut":
        return cls(
            id=session.id,
            name=session.name,
            created_at=session.created_at,
            updated_at=session.updated_at,
            metadata=session.metadata,
        )


class StatsOut(BaseModel):
    session_count: int
    message_count: int
    storage_bytes: int

    @classmethod
    def from_domain(cls, stats: StoreStats) -> "StatsOut":
        return cls(
            session_count=stats.session_count,
            message_count=stats.message_count,
            storage_bytes=stats.storage_bytes,
        )


# ---- 消息 ----

class MessageCreate(BaseModel):
    role: str = "user"
    content: str
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageOut(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    model: Optional[str] = None
    token_count: Optional[int] = None
    created_at: datetime
    metadata: Dict[str, Any]

    @classmethod
    def from_domain(cls, record: MessageRecord) -> "MessageOut":
        return cls(
            id=record.id,
            session_id=record.session_id,
            role=record.role,
            content=record.content,
            model=record.model,
            token_count=record.token_count,
            created_at=record.created_at,
            metadata=record.metadata,
        )


# ---- OpenAI 兼容 ----

class OpenAIMessage(BaseModel):
    role: str
    content: Optional[str] = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None


class OpenAIChatRequest(BaseModel):
    model: str
    messages: List[OpenAIMessage] = Field(..., min_length=1)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Any] = None


# ---- WebSocket ----

class WsClientMessage(BaseModel):
    type: str
    content: str = ""
    stream: bool = True
