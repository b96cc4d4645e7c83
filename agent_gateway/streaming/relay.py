"""流式中继。

一个生产者（Provider 适配器，在独立的 asyncio.Task 中驱动厂商网络 I/O）
通过有界 FIFO 把文本增量交给一个消费者（传输层发送方）：

- 队列满时生产者挂起，队列空时消费者挂起。
- 结束由关闭队列表示，消费者的 async for 在没有更多数据时自然结束。
- 生产者一个 token 都没产出就失败时，消费者同样正常结束，
  之后可通过 relay.error 取到失败原因。
- 消费者累积完整文本（relay.text），供结束后一次性落库。
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional, Sequence

from agent_gateway.domain.models import ChatMessage, ChatOptions, StreamToken
from agent_gateway.infrastructure.logging.logger import log_event
from agent_gateway.providers.base import ProviderClient

DEFAULT_QUEUE_SIZE = 100

# 仅用于唤醒正在等待的消费者，不会出现在迭代结果中
_EOF = object()


class TokenSink:
    """有界的 token 队列，close() 后迭代在排空剩余数据后结束。"""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, token: StreamToken) -> None:
        if self._closed:
            raise RuntimeError("put() on a closed sink")
        await self._queue.put(token)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_EOF)
        except asyncio.QueueFull:
            # 队列满时消费者不会阻塞在 get() 上，排空后会看到 closed
            pass

    def __aiter__(self) -> "TokenSink":
        return self

    async def __anext__(self) -> StreamToken:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _EOF:
            raise StopAsyncIteration
        return item


class StreamRelay:
    """把一次 Provider 流式调用桥接为可 async for 的 token 序列。"""

    def __init__(
        self,
        provider: ProviderClient,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ):
        self._provider = provider
        self._messages = list(messages)
        self._options = options
        self.sink = TokenSink(maxsize)
        self.error: Optional[BaseException] = None
        self._parts: List[str] = []
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "StreamRelay":
        if self._task is None:
            self._task = asyncio.create_task(self._produce())
        return self

    async def _produce(self) -> None:
        try:
            await self._provider.chat_stream(self._messages, self._options, self.sink)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.error = exc
            log_event(
                logging.ERROR,
                "Provider streaming failed",
                {"provider": getattr(self._provider, "name", "?")},
                error=str(exc),
            )
        finally:
            self.sink.close()

    async def __aiter__(self) -> AsyncIterator[StreamToken]:
        self.start()
        async for token in self.sink:
            self._parts.append(token)
            yield token
        # 队列关闭后生产者已进入 finally，这里等待它真正退出；其结果只通过 self.error 暴露
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def cancel(self) -> None:
        """立即拆除生产者任务，不等待其收尾。"""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.sink.close()
