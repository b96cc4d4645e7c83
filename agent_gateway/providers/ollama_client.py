"""Ollama 本地推理 Provider 适配器。

- 端点: {base_url}/api/chat，无需认证。
- 系统提示词内联：仅当消息列表里没有 system 消息时在开头插入。
- 流式响应为逐行 JSON 对象（NDJSON），文本在 message.content。
- 部分本地模型不会返回结构化的 tool_calls，而是把函数调用以 JSON 数组写在
  回复末尾，这里用 extract_inline_tool_calls 做兜底识别。
"""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from agent_gateway.config.settings import settings
from agent_gateway.domain.exceptions import ApiError, InvalidResponseError, NetworkError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ChatResult, ChatUsage, ToolCall
from agent_gateway.providers.base import raise_for_status
from agent_gateway.providers.registry import OLLAMA_CONFIG


class OllamaClient:
    """Ollama Provider 客户端实现。"""

    name = "ollama"

    def __init__(self, cfg=settings):
        self._settings = cfg

    def supported_models(self) -> List[str]:
        return list(OLLAMA_CONFIG.models)

    # ---- 非流式 ----

    async def chat(self, messages: Sequence[ChatMessage], options: ChatOptions) -> ChatResult:
        payload = self._build_payload(messages, options, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._url(), json=payload)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name)
        raise_for_status(self.name, resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise InvalidResponseError(code="INVALID_RESPONSE", message=str(e), provider=self.name)
        if not isinstance(data, dict):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="response body is not an object", provider=self.name)
        return self._parse_response(data, payload["model"])

    # ---- 流式 ----

    async def chat_stream(self, messages: Sequence[ChatMessage], options: ChatOptions, sink) -> None:
        payload = self._build_payload(messages, options, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", self._url(), json=payload) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise_for_status(self.name, resp.status_code, resp.text)
                    async for line in resp.aiter_lines():
                        text = self._parse_stream_line(line)
                        if text:
                            await sink.put(text)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name)

    # ---- 请求构造 ----

    def _url(self) -> str:
        base = getattr(self._settings, "ollama_base_url", None) or OLLAMA_CONFIG.base_url
        return f"{base.rstrip('/')}/api/chat"

    def _build_payload(self, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool) -> Dict[str, Any]:
        msgs = [self._message_to_payload(m) for m in messages]
        if options.system_prompt and not any(m.role == "system" for m in messages):
            msgs.insert(0, {"role": "system", "content": options.system_prompt})
        payload: Dict[str, Any] = {
            "model": options.model or getattr(self._settings, "ollama_model", None) or OLLAMA_CONFIG.default_model,
            "messages": msgs,
            "stream": stream,
            "options": {
                "temperature": options.temperature if options.temperature is not None else OLLAMA_CONFIG.default_temperature,
                "num_predict": options.max_tokens or OLLAMA_CONFIG.default_max_tokens,
            },
        }
        if options.tools:
            payload["tools"] = [tool.to_function_payload() for tool in options.tools]
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            # Ollama 期望 arguments 为对象而不是字符串
            payload["tool_calls"] = [
                {"function": {"name": call.name, "arguments": _loads_object(call.arguments)}}
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    # ---- 响应解析 ----

    def _parse_response(self, data: Dict[str, Any], requested_model: str) -> ChatResult:
        msg = data.get("message")
        if not isinstance(msg, dict):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="response has no message", provider=self.name)
        content = msg.get("content") or ""
        if not isinstance(content, str):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="message content is not text", provider=self.name)
        raw_calls = msg.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raw_calls = []
        tool_calls = [call for call in (_to_tool_call(entry) for entry in raw_calls) if call]
        if not tool_calls:
            content, tool_calls = extract_inline_tool_calls(content)
        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            usage = ChatUsage(
                input_tokens=data.get("prompt_eval_count") or 0,
                output_tokens=data.get("eval_count") or 0,
            )
        return ChatResult(
            content=content,
            model=data.get("model") or requested_model,
            usage=usage,
            tool_calls=tool_calls or None,
        )

    def _parse_stream_line(self, line: str) -> Optional[str]:
        text = (line or "").strip()
        if not text:
            return None
        try:
            chunk = json.loads(text)
        except json.JSONDecodeError:
            return None
        if not isinstance(chunk, dict):
            return None
        if chunk.get("error"):
            raise ApiError(code="API_ERROR", message=str(chunk["error"]), http_status=500, provider=self.name)
        message = chunk.get("message")
        if not isinstance(message, dict):
            return None
        content = message.get("content")
        return content if isinstance(content, str) and content else None


def extract_inline_tool_calls(content: str) -> Tuple[str, List[ToolCall]]:
    """从回复文本中识别以 JSON 数组形式给出的函数调用。

    找到第一个 "["，用括号深度计数定位与之匹配的 "]"（字符串内的括号不计入），
    尝试把这段文本解析为函数调用列表，支持 {"function": {...}} 包装形式和
    直接的 {"name", "arguments"} 形式。只要有一项解析成功，就返回
    (数组之前的文本, 调用列表)；否则原样返回 (content, [])。从不抛异常。
    """

    start = content.find("[")
    if start < 0:
        return content, []
    end = _matching_bracket(content, start)
    if end is None:
        return content, []
    try:
        entries = json.loads(content[start:end + 1])
    except json.JSONDecodeError:
        return content, []
    if not isinstance(entries, list):
        return content, []
    calls = [call for call in (_to_tool_call(entry) for entry in entries) if call]
    if not calls:
        return content, []
    return content[:start].strip(), calls


def _matching_bracket(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "[":
            depth += 1
        elif c == "]":
            depth -= 1
            if depth == 0:
                return i
    return None


def _to_tool_call(entry: Any) -> Optional[ToolCall]:
    if not isinstance(entry, dict):
        return None
    func = entry.get("function") if isinstance(entry.get("function"), dict) else entry
    name = func.get("name")
    if not isinstance(name, str) or not name:
        return None
    raw_args = func.get("arguments", {})
    arguments = raw_args if isinstance(raw_args, str) else json.dumps(raw_args, ensure_ascii=False)
    call_id = entry.get("id")
    return ToolCall(id=call_id if isinstance(call_id, str) else None, name=name, arguments=arguments)


def _loads_object(raw: str) -> Any:
    try:
        return json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
