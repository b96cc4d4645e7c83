"""OpenAI 兼容 Provider 适配器。

OpenAI、Kimi(Moonshot)、GLM(BigModel) 都使用同一套 chat/completions 协议：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本模块负责：

1. 把统一的消息列表与 ChatOptions 转换为 chat/completions 请求体。
2. 调用 HTTP 接口并处理网络/API 异常（429 单独映射为 RateLimitError）。
3. 将响应 JSON 解析为统一的 ChatResult（含工具调用，arguments 保持原始字符串）。
4. 流式模式下解析 `data: {...}` 事件行直到 `data: [DONE]`，只把文本增量推给 sink。

系统提示词采用“内联”方式：仅当消息列表里没有 system 消息时才在开头插入一条。
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import httpx

from agent_gateway.config.settings import settings
from agent_gateway.domain.exceptions import InvalidResponseError, NetworkError, ValidationError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ChatResult, ChatUsage, ToolCall
from agent_gateway.providers.base import raise_for_status
from agent_gateway.providers.registry import ProviderConfig, get_provider_config


class OpenAIClient:
    """OpenAI 兼容协议的客户端实现。

    vendor 决定读取哪一组配置（openai / kimi / glm），
    也作为 name 用于日志与落库。
    """

    def __init__(self, cfg=settings, vendor: str = "openai"):
        self._settings = cfg
        self.name = vendor
        self._config: ProviderConfig = get_provider_config(vendor)

    def supported_models(self) -> List[str]:
        return list(self._config.models)

    # ---- 非流式 ----

    async def chat(self, messages: Sequence[ChatMessage], options: ChatOptions) -> ChatResult:
        payload = self._build_payload(messages, options, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._url(), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
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
        base = getattr(self._settings, f"{self.name}_base_url", None) or self._config.base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        api_key = getattr(self._settings, f"{self.name}_api_key", None)
        if not api_key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name.upper()}_API_KEY not set")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _default_model(self) -> str:
        return getattr(self._settings, f"{self.name}_model", None) or self._config.default_model

    def _build_payload(self, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool) -> Dict[str, Any]:
        msgs = [self._message_to_payload(m) for m in messages]
        if options.system_prompt and not any(m.role == "system" for m in messages):
            msgs.insert(0, {"role": "system", "content": options.system_prompt})
        payload: Dict[str, Any] = {
            "model": options.model or self._default_model(),
            "messages": msgs,
            "temperature": options.temperature if options.temperature is not None else self._config.default_temperature,
            "max_tokens": options.max_tokens or self._config.default_max_tokens,
            "stream": stream,
        }
        # 工具调用：如果请求中携带了工具定义，则按 function tool 规范转换
        if options.tools:
            payload["tools"] = [tool.to_function_payload() for tool in options.tools]
            if options.tool_choice is not None:
                payload["tool_choice"] = options.tool_choice
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            payload["tool_calls"] = [call.to_payload() for call in message.tool_calls]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    # ---- 响应解析 ----

    def _parse_response(self, data: Dict[str, Any], requested_model: str) -> ChatResult:
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="response has no choices", provider=self.name)
        msg = choices[0].get("message") or {}
        if not isinstance(msg, dict):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="choice has no message object", provider=self.name)
        raw_calls = msg.get("tool_calls") or []
        if not isinstance(raw_calls, list) or not all(isinstance(call, dict) for call in raw_calls):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="malformed tool_calls", provider=self.name)
        tool_calls = [ToolCall.from_payload(call) for call in raw_calls]

        # 部分兼容实现仍会返回旧版 function_call 字段
        function_call = msg.get("function_call")
        if isinstance(function_call, dict):
            tool_calls.append(
                ToolCall(
                    id=function_call.get("id"),
                    name=function_call.get("name") or "",
                    arguments=function_call.get("arguments") or "{}",
                )
            )
        content = msg.get("content")
        if (content is None and not tool_calls) or (content is not None and not isinstance(content, str)):
            raise InvalidResponseError(code="INVALID_RESPONSE", message="message has no content", provider=self.name)
        return ChatResult(
            content=content or "",
            model=data.get("model") or requested_model,
            usage=self._parse_usage(data.get("usage")),
            tool_calls=tool_calls or None,
        )

    @staticmethod
    def _parse_usage(raw: Optional[Dict[str, Any]]) -> Optional[ChatUsage]:
        if not isinstance(raw, dict) or not raw:
            return None
        return ChatUsage(
            input_tokens=raw.get("prompt_tokens", 0),
            output_tokens=raw.get("completion_tokens", 0),
        )

    @staticmethod
    def _parse_stream_line(line: str) -> Optional[str]:
        """解析单条 SSE 行，返回文本增量；心跳、role-only、usage-only 帧返回 None。"""

        data_str = (line or "").strip()
        if not data_str.startswith("data:"):
            return None
        data_str = data_str[5:].strip()
        if not data_str or data_str == "[DONE]":
            return None
        try:
            chunk = json.loads(data_str)
        except json.JSONDecodeError:
            return None
        if not isinstance(chunk, dict):
            return None
        choices = chunk.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        return content if isinstance(content, str) and content else None
