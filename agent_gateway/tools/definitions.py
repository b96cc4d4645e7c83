"""工具协议。

每个工具对外暴露：
- definition: 提供给 LLM 的 ToolDefinition（名称、描述、JSON Schema）。
- call(arguments): 接收原始 JSON 字符串参数，返回文本结果。

工具自身不应抛异常，参数错误等情况以文本形式返回给模型。
"""

from typing import Protocol

from agent_gateway.domain.models import ToolDefinition


class Tool(Protocol):
    """可被 Agent 循环调用的工具。"""

    @property
    def definition(self) -> ToolDefinition:
        ...

    async def call(self, arguments: str) -> str:
        ...
