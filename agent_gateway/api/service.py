"""对外 API 服务模块。

把存储、Provider、工具注册表和 AgentEngine 组装在一起，
为 HTTP / WebSocket 路由提供统一的业务接口。
"""

import logging
import time
from contextlib import aclosing
from dataclasses import replace
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from agent_gateway.agents.agent_loop import AgentEngine, StatusCallback, history_to_messages
from agent_gateway.api.framing import SSE_DONE, completion_chunk, sse_event
from agent_gateway.api.schemas import OpenAIChatRequest, OpenAIMessage
from agent_gateway.config.settings import settings
from agent_gateway.domain.exceptions import SessionNotFoundError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ChatResult, ToolCall, ToolDefinition
from agent_gateway.domain.session import MessageRecord, MessageStore, Session
from agent_gateway.infrastructure.logging.logger import log_event
from agent_gateway.infrastructure.storage.json_store import JsonSessionStore
from agent_gateway.prompts import DATE_FORMAT, build_system_prompt
from agent_gateway.providers import create_provider
from agent_gateway.providers.base import ProviderClient
from agent_gateway.tools.registry import ToolRegistry, default_registry

OPENAI_ADAPTER_SOURCE = "openai_adapter"


class ChatService:
    def __init__(
        self,
        store: MessageStore,
        provider: ProviderClient,
        tool_registry: Optional[ToolRegistry] = None,
        cfg=None,
    ):
        cfg = cfg or settings
        self.store = store
        self.provider = provider
        self.tools = tool_registry
        self._history_limit = cfg.history_limit
        self.engine = AgentEngine(
            store,
            provider,
            tool_registry,
            max_loops=cfg.max_tool_loops,
            stream_queue_size=cfg.stream_queue_size,
        )

    # ---- 会话上下文 ----

    def require_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def build_context(self, session: Session, with_tools: bool = True) -> Tuple[List[ChatMessage], ChatOptions]:
        """读取最近的历史并构造调用参数。

        会话 metadata 中的 system_prompt 优先于全局配置。
        窗口开头如果是孤立的 tool 消息（对应的 assistant 已被截掉）会被丢弃。
        """

        records = self.store.recent_messages(session.id, limit=self._history_limit)
        while records and records[0].role == "tool":
            records = records[1:]
        template = session.metadata.get("system_prompt")
        options = ChatOptions(
            system_prompt=build_system_prompt(template if isinstance(template, str) else None),
            tools=self.tools.definitions() if (with_tools and self.tools) else None,
        )
        return history_to_messages(records), options

    # ---- 会话消息 ----

    async def send_message(
        self,
        session_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> MessageRecord:
        """保存一条消息；若为用户消息，运行工具循环并返回最终的 assistant 记录。"""

        session = self.require_session(session_id)
        ChatMessage(role=role, content=content)  # 角色校验
        record = self.store.insert_message(session_id, role, content, model=model, metadata=metadata)
        if role != "user":
            return record

        messages, options = self.build_context(session)
        return await self.engine.respond(session_id, messages, options, on_status=on_status)

    async def stream_message(self, session_id: str, content: str, emit: Callable[[str], Awaitable[None]]) -> str:
        """保存用户消息并流式生成回答，返回完整文本。"""

        session = self.require_session(session_id)
        self.store.insert_message(session_id, "user", content)
        messages, options = self.build_context(session, with_tools=False)
        return await self.engine.run_stream(session_id, messages, options, emit)

    # ---- OpenAI 兼容 ----

    def _resolve_openai_session(self, session_id: Optional[str], request: OpenAIChatRequest) -> Optional[str]:
        if not session_id:
            return None
        if self.store.get_session(session_id) is None:
            log_event(logging.WARNING, "Unknown session header, running stateless", {"session_id": session_id})
            return None
        last = request.messages[-1]
        if last.role == "user":
            self.store.insert_message(
                session_id,
                "user",
                last.content or "",
                model=request.model,
                metadata={"source": OPENAI_ADAPTER_SOURCE},
            )
        return session_id

    def _openai_options(self, request: OpenAIChatRequest) -> ChatOptions:
        if request.tools:
            tools = [ToolDefinition.from_function_payload(t) for t in request.tools]
        else:
            tools = self.tools.definitions() if self.tools else None
        return ChatOptions(
            model=request.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            tools=tools,
            tool_choice=request.tool_choice,
        )

    async def complete_openai(self, request: OpenAIChatRequest, session_id: Optional[str] = None) -> Dict[str, Any]:
        """非流式 chat.completions：运行工具循环，返回 chat.completion 对象。"""

        sid = self._resolve_openai_session(session_id, request)
        messages = ground_messages(request.messages)
        result = await self.engine.run(sid, messages, self._openai_options(request))
        return completion_response(result)

    async def stream_openai(
        self,
        request: OpenAIChatRequest,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """流式 chat.completions，逐个产出 SSE 帧。

        先发送只带 role 的首帧，然后是内容帧、finish_reason=stop 的尾帧和 [DONE]。
        Provider 中途失败时记录日志，已发出的内容不撤回，照常结束流。
        """

        sid = self._resolve_openai_session(session_id, request)
        messages = ground_messages(request.messages)
        options = replace(self._openai_options(request), tools=None, tool_choice=None)
        chunk_id = f"chatcmpl-{uuid4()}"

        yield sse_event(completion_chunk(chunk_id, request.model, role="assistant"))
        try:
            async with aclosing(self.engine.stream(sid, messages, options)) as tokens:
                async for token in tokens:
                    yield sse_event(completion_chunk(chunk_id, request.model, content=token))
        except Exception as exc:
            log_event(logging.ERROR, "OpenAI adapter streaming failed", {"session_id": sid}, error=str(exc))
        yield sse_event(completion_chunk(chunk_id, request.model, finish_reason="stop"))
        yield SSE_DONE


def ground_messages(messages: Sequence[OpenAIMessage]) -> List[ChatMessage]:
    """替换 {current_date}，在 system 消息前加上日期；没有 system 消息时补一条。"""

    current_date = datetime.now().strftime(DATE_FORMAT)
    result: List[ChatMessage] = []
    for m in messages:
        content = (m.content or "").replace("{current_date}", current_date)
        if m.role == "system":
            content = build_system_prompt(content)
        tool_calls = [ToolCall.from_payload(tc) for tc in m.tool_calls] if m.tool_calls else None
        result.append(ChatMessage(role=m.role, content=content, tool_calls=tool_calls, tool_call_id=m.tool_call_id))
    if not any(m.role == "system" for m in result):
        result.insert(0, ChatMessage(role="system", content=build_system_prompt("").strip()))
    return result


def completion_response(result: ChatResult) -> Dict[str, Any]:
    usage = None
    if result.usage:
        usage = {
            "prompt_tokens": result.usage.input_tokens,
            "completion_tokens": result.usage.output_tokens,
            "total_tokens": result.usage.total_tokens,
        }
    body: Dict[str, Any] = {
        "id": f"chatcmpl-{uuid4()}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": result.model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": result.content},
                "finish_reason": "stop",
            }
        ],
    }
    if usage:
        body["usage"] = usage
    return body


_service: Optional[ChatService] = None


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例），Provider 按配置选定一次。"""
    global _service
    if _service is None:
        _service = ChatService(
            store=JsonSessionStore(root=settings.storage_root),
            provider=create_provider(settings.default_provider),
            tool_registry=default_registry(),
        )
    return _service
