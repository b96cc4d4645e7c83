"""双工连接上的生成任务管理。

每个连接同一时刻最多只有一个活动的生成任务：
新请求到来时直接拆除旧任务（不等待其排空），取消请求会通知前端并清空句柄。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Optional

from agent_gateway.infrastructure.logging.logger import log_event

EmitEvent = Callable[[str, str], Awaitable[None]]

CANCELLED_STATUS = "Generation cancelled"


class ConnectionSupervisor:
    def __init__(self, emit: EmitEvent, connection_id: Optional[str] = None):
        self._emit = emit
        self._task: Optional[asyncio.Task] = None
        self._log_ctx = {"connection_id": connection_id}

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, run: Coroutine[Any, Any, None]) -> asyncio.Task:
        """启动新的生成任务，已有的活动任务先被拆除。"""

        self._abort()
        task = asyncio.create_task(run)
        self._task = task
        task.add_done_callback(self._on_done)
        return task

    async def cancel(self) -> None:
        was_active = self._abort()
        log_event(logging.INFO, "Generation cancelled", self._log_ctx, was_active=was_active)
        await self._emit("status", CANCELLED_STATUS)
        await self._emit("done", "")

    async def close(self) -> None:
        """连接关闭时调用，拆除并等待活动任务退出。"""

        task = self._task
        if self._abort():
            # 被取消的任务以 CancelledError 结束，这里只需等它真正退出
            await asyncio.gather(task, return_exceptions=True)

    def _abort(self) -> bool:
        task, self._task = self._task, None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def _on_done(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(logging.ERROR, "Generation task failed", self._log_ctx, error=str(exc))
