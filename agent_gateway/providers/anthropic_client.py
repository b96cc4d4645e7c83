"""Anthropic Messages API 适配器。

与 OpenAI 兼容协议的主要差异：

- 系统提示词必须作为独立的 `system` 字段发送：按顺序抽取所有 system 消息，
  用换行拼接，再追加 ChatOptions.system_prompt，去掉首尾空白；
  这些 system 消息不再出现在 messages 中。
- 工具以 {name, description, input_schema} 形式声明；模型的工具调用体现为
  `tool_use` 内容块，工具结果需要以 user 角色的 `tool_result` 块回传。
- 流式响应是带类型的事件对象，只有 content_block_delta 中的 text_delta 携带文本。
"""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from agent_gateway.config.settings import settings
from agent_gateway.domain.exceptions import ApiError, InvalidResponseError, NetworkError, ValidationError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ChatResult, ChatUsage, ToolCall
from agent_gateway.providers.base import raise_for_status
from agent_gateway.providers.registry import ANTHROPIC_CONFIG

ANTHROPIC_VERSION = "2023-06-01"

_TOOL_CHOICE_MAP = {
    "auto": {"type": "auto"},
    "required": {"type": "any"},
    "any": {"type": "any"},
    "none": {"type": "none"},
}


class AnthropicClient:
    """Anthropic Provider 客户端实现。"""

    name = "anthropic"

    def __init__(self, cfg=settings):
        self._settings = cfg

    def supported_models(self) -> List[str]:
        return list(ANTHROPIC_CONFIG.models)

    # ---- 非流式 ----

    async def chat(self, messages: Sequence[ChatMessage], options: ChatOptions) -> ChatResult:
        payload = self._build_payload(messages, options, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._url(), json=payload, headers=self._headers())
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
                async with client.stream("POST", self._url(), json=payload, headers=self._headers()) as resp:
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
        base = getattr(self._settings, "anthropic_base_url", None) or ANTHROPIC_CONFIG.base_url
        return f"{base.rstrip('/')}/v1/messages"

    def _headers(self) -> Dict[str, str]:
        api_key = getattr(self._settings, "anthropic_api_key", None)
        if not api_key:
            raise ValidationError(code="MISSING_API_KEY", message="ANTHROPIC_API_KEY not set")
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _build_payload(self, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool) -> Dict[str, Any]:
        system, msgs = split_system_prompt(messages, options.system_prompt)
        payload: Dict[str, Any] = {
            "model": options.model or getattr(self._settings, "anthropic_model", None) or ANTHROPIC_CONFIG.default_model,
            "messages": self._messages_to_payload(msgs),
            "temperature": options.temperature if options.temperature is not None else ANTHROPIC_CONFIG.default_temperature,
            "max_tokens": options.max_tokens or ANTHROPIC_CONFIG.default_max_tokens,
            "stream": stream,
        }
        if system:
            payload["system"] = system
        if options.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters or {"type": "object"}}
                for t in options.tools
            ]
            if options.tool_choice is not None:
                choice = options.tool_choice
                payload["tool_choice"] = _TOOL_CHOICE_MAP.get(choice, choice) if isinstance(choice, str) else choice
        return payload

    @staticmethod
    def _messages_to_payload(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
        """转换为 Anthropic messages；连续的 tool 结果合并到同一条 user 消息。"""

        out: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "tool":
                block = {"type": "tool_result", "tool_use_id": m.tool_call_id, "content": m.content}
                prev = out[-1] if out else None
                if prev and prev["role"] == "user" and isinstance(prev["content"], list) and prev.get("_tool_results"):
                    prev["content"].append(block)
                else:
                    out.append({"role": "user", "content": [block], "_tool_results": True})
                continue
            if m.role == "assistant" and m.tool_calls:
                blocks: List[Dict[str, Any]] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                for call in m.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": _loads_arguments(call.arguments),
                    })
                out.append({"role": "assistant", "content": blocks})
                continue
            out.append({"role": m.role, "content": m.content})
        for item in out:
            item.pop("_tool_results", None)
        return out

    # ---- 响应解析 ----

    def _parse_response(self, data: Dict[str, Any], requested_model: str) -> ChatResult:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="response has no content blocks", provider=self.name)
        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in blocks:
            if not isinstance(block, dict):
                raise InvalidResponseError(code="INVALID_RESPONSE", message="content block is not an object", provider=self.name)
            kind = block.get("type")
            if kind == "text":
                texts.append(str(block.get("text") or ""))
            elif kind == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id"),
                        name=block.get("name") or "",
                        arguments=json.dumps(block.get("input") or {}, ensure_ascii=False),
                    )
                )
        if not texts and not tool_calls:
            raise InvalidResponseError(code="INVALID_RESPONSE", message="response has no text", provider=self.name)
        usage_raw = data.get("usage")
        usage = None
        if isinstance(usage_raw, dict) and usage_raw:
            usage = ChatUsage(
                input_tokens=usage_raw.get("input_tokens", 0),
                output_tokens=usage_raw.get("output_tokens", 0),
            )
        return ChatResult(
            content="".join(texts),
            model=data.get("model") or requested_model,
            usage=usage,
            tool_calls=tool_calls or None,
        )

    def _parse_stream_line(self, line: str) -> Optional[str]:
        data_str = (line or "").strip()
        if not data_str.startswith("data:"):
            # "event: ..." 行与空行直接忽略，类型信息也在 data 里
            return None
        try:
            event = json.loads(data_str[5:].strip())
        except json.JSONDecodeError:
            return None
        if not isinstance(event, dict):
            return None
        kind = event.get("type")
        if kind == "error":
            err = event.get("error")
            if not isinstance(err, dict):
                err = {}
            raise ApiError(code="API_ERROR", message=err.get("message") or "stream error", http_status=500, provider=self.name)
        if kind != "content_block_delta":
            return None
        delta = event.get("delta")
        if not isinstance(delta, dict) or delta.get("type", "text_delta") != "text_delta":
            return None
        text = delta.get("text")
        return text if isinstance(text, str) and text else None


def split_system_prompt(
    messages: Sequence[ChatMessage],
    override: Optional[str] = None,
) -> Tuple[str, List[ChatMessage]]:
    """抽取 system 消息为独立字段，返回 (system 文本, 其余消息)。"""

    parts: List[str] = []
    rest: List[ChatMessage] = []
    for m in messages:
        if m.role == "system":
            parts.append(m.content)
        else:
            rest.append(m)
    system = "\n".join(parts)
    if override:
        system = f"{system}\n{override}" if system else override
    return system.strip(), rest


def _loads_arguments(raw: str) -> Dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {"_raw": raw}
    return value if isinstance(value, dict) else {"_raw": raw}
