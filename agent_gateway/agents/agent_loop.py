"""Agent 引擎核心模块：有界的工具调用循环。

循环用 LangGraph 状态图表达：

    call_provider ──(无工具调用)──> finish ──> END
         │
         └──(有工具调用)──> dispatch_tools ──(未达上限)──> call_provider
                                   │
                                   └──(已达上限)──> loop_exceeded ──> END

每次外部请求最多调用 Provider max_loops 次（默认 5）。
每一步的持久化严格按因果顺序：带工具调用的 assistant 消息先于其 tool 结果落库，
落库的记录与下一次调用所用的上下文保持一致。
存储锁只在同步的 insert_message 内部持有，不会跨越任何 Provider/工具的 await。
"""

import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypedDict
from uuid import uuid4

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from agent_gateway.domain.exceptions import LoopExceededError, SessionNotFoundError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ChatResult, ToolCall
from agent_gateway.domain.session import MessageRecord, MessageStore
from agent_gateway.infrastructure.logging.logger import log_event
from agent_gateway.providers.base import ProviderClient
from agent_gateway.streaming.relay import DEFAULT_QUEUE_SIZE, StreamRelay
from agent_gateway.tools.registry import ToolRegistry

MAX_TOOL_LOOPS = 5

StatusCallback = Callable[[str], Awaitable[None]]
TokenCallback = Callable[[str], Awaitable[None]]


class LoopState(TypedDict, total=False):
    """在图节点之间传递的状态。"""

    session_id: Optional[str]
    messages: List[ChatMessage]
    options: ChatOptions
    calls: int
    result: Optional[ChatResult]
    record: Optional[MessageRecord]
    status: str
    log_ctx: Dict[str, Any]
    on_status: Optional[StatusCallback]


class AgentEngine:
    def __init__(
        self,
        store: Optional[MessageStore],
        provider: ProviderClient,
        tool_registry: Optional[ToolRegistry] = None,
        max_loops: int = MAX_TOOL_LOOPS,
        stream_queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._store = store
        self._provider = provider
        self._tools = tool_registry
        self._max_loops = min(max_loops, MAX_TOOL_LOOPS)
        self._queue_size = stream_queue_size
        self._graph = self._build_graph()

    @property
    def provider(self) -> ProviderClient:
        return self._provider

    # ---- 一次性调用 ----

    async def run(
        self,
        session_id: Optional[str],
        messages: Sequence[ChatMessage],
        options: Optional[ChatOptions] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> ChatResult:
        """运行工具调用循环直到得到最终回答。

        Args:
            session_id: 会话ID；为 None 时不落库（无状态调用）。
            messages: 当前上下文，不会被原地修改。
            options: 调用参数。
            on_status: 可选回调，执行工具前通知调用方。

        Raises:
            SessionNotFoundError: 会话不存在（在任何 Provider 调用之前检查）。
            LoopExceededError: 达到最大轮数仍有工具调用。
            NetworkError / ApiError / RateLimitError / InvalidResponseError: Provider 失败，原样传播。
        """
        final = await self._run_graph(session_id, messages, options, on_status)
        return final["result"]

    async def respond(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        options: Optional[ChatOptions] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> MessageRecord:
        """与 run 相同，但返回本次运行落库的最终 assistant 记录。

        直接取自写入结果，同一会话上并发写入的其他消息不会被误返回。
        """
        if not session_id:
            raise ValueError("respond() requires a session_id")
        final = await self._run_graph(session_id, messages, options, on_status)
        return final["record"]

    async def _run_graph(
        self,
        session_id: Optional[str],
        messages: Sequence[ChatMessage],
        options: Optional[ChatOptions],
        on_status: Optional[StatusCallback],
    ) -> LoopState:
        self._check_session(session_id)
        log_ctx = {"trace_id": f"tr-{uuid4().hex}", "session_id": session_id, "provider": self._provider.name}
        start_time = time.time()
        state: LoopState = {
            "session_id": session_id,
            "messages": list(messages),
            "options": options or ChatOptions(),
            "calls": 0,
            "result": None,
            "record": None,
            "status": "running",
            "log_ctx": log_ctx,
            "on_status": on_status,
        }
        final = await self._graph.ainvoke(state, config={"recursion_limit": 4 * self._max_loops + 4})

        log_event(
            logging.INFO,
            "Completed agent run",
            log_ctx,
            status=final["status"],
            provider_calls=final["calls"],
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        if final["status"] == "loop_exceeded":
            raise LoopExceededError(self._max_loops)
        return final

    # ---- 流式调用 ----

    async def stream(
        self,
        session_id: Optional[str],
        messages: Sequence[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> AsyncIterator[str]:
        """流式生成一次回答（不含工具循环），逐个产出文本增量。

        Provider 在独立任务中写入中继队列，这里按顺序取出并产出；
        正常结束后把累积的文本作为一条 assistant 消息落库。
        已经产出的片段不会撤回：Provider 中途失败时先保存已有文本再抛出错误。
        消费方提前停止迭代时，Provider 任务被拆除，不落库。
        """
        self._check_session(session_id)
        options = options or ChatOptions()
        log_ctx = {"trace_id": f"tr-{uuid4().hex}", "session_id": session_id, "provider": self._provider.name}
        relay = StreamRelay(self._provider, messages, options, self._queue_size).start()
        try:
            async for token in relay:
                yield token
        finally:
            relay.cancel()

        text = relay.text
        if session_id and text:
            self._persist(
                session_id,
                "assistant",
                text,
                log_ctx,
                model=options.model or self._provider.name,
                token_count=max(len(text) // 4, 1),
                strict=relay.error is None,
            )
        if relay.error is not None:
            raise relay.error
        log_event(logging.INFO, "Completed streaming run", log_ctx, chars=len(text))

    async def run_stream(
        self,
        session_id: Optional[str],
        messages: Sequence[ChatMessage],
        options: Optional[ChatOptions],
        emit: TokenCallback,
    ) -> str:
        """stream() 的回调形式：每个增量交给 emit，返回完整文本。"""
        parts: List[str] = []
        async with aclosing(self.stream(session_id, messages, options)) as tokens:
            async for token in tokens:
                parts.append(token)
                await emit(token)
        return "".join(parts)

    # ---- 图节点 ----

    def _build_graph(self) -> CompiledStateGraph:
        graph = StateGraph(LoopState)
        graph.add_node("call_provider", self._call_provider_node)
        graph.add_node("dispatch_tools", self._dispatch_tools_node)
        graph.add_node("finish", self._finish_node)
        graph.add_node("loop_exceeded", self._loop_exceeded_node)
        graph.set_entry_point("call_provider")
        graph.add_conditional_edges(
            "call_provider",
            self._after_call,
            {"finish": "finish", "dispatch_tools": "dispatch_tools"},
        )
        graph.add_conditional_edges(
            "dispatch_tools",
            self._after_dispatch,
            {"call_provider": "call_provider", "loop_exceeded": "loop_exceeded"},
        )
        graph.add_edge("finish", END)
        graph.add_edge("loop_exceeded", END)
        return graph.compile()

    async def _call_provider_node(self, state: LoopState) -> Dict[str, Any]:
        log_event(
            logging.INFO,
            "Calling provider",
            state["log_ctx"],
            round=state["calls"] + 1,
            message_count=len(state["messages"]),
        )
        # 失败直接向上抛出：此时上下文尚未修改
        result = await self._provider.chat(state["messages"], state["options"])
        return {"result": result, "calls": state["calls"] + 1}

    @staticmethod
    def _after_call(state: LoopState) -> str:
        return "finish" if state["result"].finished else "dispatch_tools"

    def _after_dispatch(self, state: LoopState) -> str:
        return "loop_exceeded" if state["calls"] >= self._max_loops else "call_provider"

    async def _finish_node(self, state: LoopState) -> Dict[str, Any]:
        result = state["result"]
        usage_meta: Dict[str, Any] = {}
        if result.usage:
            usage_meta = {
                "input_tokens": result.usage.input_tokens,
                "output_tokens": result.usage.output_tokens,
            }
            log_event(logging.INFO, "Token usage", state["log_ctx"], **usage_meta)
        record = None
        if state["session_id"]:
            record = self._persist(
                state["session_id"],
                "assistant",
                result.content,
                state["log_ctx"],
                model=result.model,
                token_count=result.usage.total_tokens if result.usage else None,
                metadata={"usage": usage_meta} if usage_meta else None,
                strict=True,
            )
        messages = state["messages"] + [ChatMessage(role="assistant", content=result.content)]
        return {"messages": messages, "record": record, "status": "finished"}

    async def _dispatch_tools_node(self, state: LoopState) -> Dict[str, Any]:
        result = state["result"]
        session_id = state["session_id"]
        log_ctx = state["log_ctx"]

        # 补齐缺失的调用 ID，保证 assistant 消息与随后的 tool 消息可以对应
        calls = [
            call if call.id else ToolCall(id=str(uuid4()), name=call.name, arguments=call.arguments)
            for call in result.tool_calls
        ]
        messages = list(state["messages"])
        messages.append(ChatMessage(role="assistant", content=result.content, tool_calls=calls))
        if session_id:
            self._persist(
                session_id,
                "assistant",
                result.content,
                log_ctx,
                model=result.model,
                metadata={"tool_calls": [call.to_payload() for call in calls]},
            )

        on_status = state.get("on_status")
        for call in calls:
            if on_status is not None:
                await on_status(f"Calling tool {call.name}")
            log_event(logging.INFO, "Invoking tool", log_ctx, tool=call.name, tool_call_id=call.id)
            if self._tools is not None:
                output = await self._tools.invoke(call.name, call.arguments)
            else:
                output = f"Error: Tool '{call.name}' not found"
            messages.append(ChatMessage(role="tool", content=output, tool_call_id=call.id))
            if session_id:
                self._persist(session_id, "tool", output, log_ctx, metadata={"tool_call_id": call.id})
        return {"messages": messages}

    async def _loop_exceeded_node(self, state: LoopState) -> Dict[str, Any]:
        log_event(logging.WARNING, "Max tool call loops reached", state["log_ctx"], provider_calls=state["calls"])
        return {"status": "loop_exceeded"}

    # ---- 持久化 ----

    def _check_session(self, session_id: Optional[str]) -> None:
        if session_id is None:
            return
        if self._store is None or self._store.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)

    def _persist(
        self,
        session_id: str,
        role: str,
        content: str,
        log_ctx: Dict[str, Any],
        model: Optional[str] = None,
        token_count: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        strict: bool = False,
    ) -> Optional[MessageRecord]:
        """写入一条消息并返回记录。中间步骤写入失败只记录日志并返回 None，strict=True 时向上抛出。"""
        try:
            record = self._store.insert_message(
                session_id, role, content, model=model, token_count=token_count, metadata=metadata
            )
        except Exception as exc:
            if strict:
                raise
            log_event(logging.ERROR, "Failed to persist message", log_ctx, role=role, error=str(exc))
            return None
        log_event(logging.INFO, "Stored message", log_ctx, role=role, message_id=record.id)
        return record


def history_to_messages(records: Iterable[MessageRecord]) -> List[ChatMessage]:
    """把存储记录还原为上下文消息，工具调用信息取自 metadata。"""

    messages: List[ChatMessage] = []
    for rec in records:
        meta = rec.metadata or {}
        tool_calls = None
        tool_call_id = None
        if rec.role == "assistant" and meta.get("tool_calls"):
            tool_calls = [ToolCall.from_payload(item) for item in meta["tool_calls"]]
        if rec.role == "tool":
            tool_call_id = meta.get("tool_call_id")
        messages.append(
            ChatMessage(role=rec.role, content=rec.content, tool_calls=tool_calls, tool_call_id=tool_call_id)
        )
    return messages
