"""Provider 抽象接口。

上层 AgentEngine 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAIClient、AnthropicClient）。
- 负责：将统一的消息列表与 ChatOptions 转成具体 API 请求，
  并把响应 JSON 解析为 ChatResult；流式模式下把文本增量推入 TokenSink。

Provider 在启动时按配置选定一次，之后以引用方式共享给所有请求处理器。
"""

from typing import List, Protocol, Sequence, TYPE_CHECKING

from agent_gateway.domain.exceptions import ApiError, RateLimitError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ChatResult

if TYPE_CHECKING:
    from agent_gateway.streaming.relay import TokenSink


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志与持久化。
    - chat(messages, options): 一次非流式调用，返回统一的 ChatResult。
    - chat_stream(messages, options, sink): 流式调用，队列满时挂起而不是丢弃。
    - supported_models(): 仅供展示。
    """

    name: str

    async def chat(self, messages: Sequence[ChatMessage], options: ChatOptions) -> ChatResult:
        ...

    async def chat_stream(
        self,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        sink: "TokenSink",
    ) -> None:
        ...

    def supported_models(self) -> List[str]:
        ...


def raise_for_status(vendor: str, status_code: int, body: str) -> None:
    """把非成功状态码映射为统一异常，429 单独映射为 RateLimitError。"""

    if status_code == 429:
        raise RateLimitError(code="RATE_LIMIT", message=f"{vendor} rate limit", http_status=429, provider=vendor)
    if status_code >= 400:
        raise ApiError(
            code="API_ERROR",
            message=f"{vendor} error {status_code}: {body}",
            http_status=status_code,
            provider=vendor,
            body=body,
        )
