"""传输层帧格式。

- SSE：每个事件一行 ``data: <json>``，后跟空行；流结束发送 ``data: [DONE]``。
- WebSocket：``{"type": "chunk" | "done" | "error" | "status", "content": "..."}``。
"""

import json
import time
from typing import Any, Dict, Optional

SSE_DONE = "data: [DONE]\n\n"

WS_EVENT_TYPES = ("chunk", "done", "error", "status")


def sse_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def ws_event(kind: str, content: str = "") -> Dict[str, str]:
    if kind not in WS_EVENT_TYPES:
        raise ValueError(f"Unknown websocket event type: {kind!r}")
    return {"type": kind, "content": content}


def completion_chunk(
    chunk_id: str,
    model: str,
    role: Optional[str] = None,
    content: Optional[str] = None,
    finish_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """构造一个 chat.completion.chunk 对象。finish_reason 为空时不输出该字段。"""

    choice: Dict[str, Any] = {"index": 0, "delta": {"role": role, "content": content}}
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [choice],
    }
