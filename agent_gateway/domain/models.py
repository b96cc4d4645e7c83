"""统一的对话与结果数据模型。

本模块定义了网关内部在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant/tool）。
- ToolCall / ToolDefinition: 模型发起的工具调用与可供模型调用的工具描述。
- ChatOptions: 一次调用的可选参数，全部是建议值，适配器负责补默认值。
- ChatResult: 从 Provider 解析后的统一响应结果。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from agent_gateway.domain.exceptions import ValidationError


# LLM 消息角色类型（与 OpenAI / Anthropic / Ollama 的 role 字段对应）
Role = Literal["system", "user", "assistant", "tool"]
ROLES = ("system", "user", "assistant", "tool")

# 流式输出中的单个文本增量
StreamToken = str


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。

    - id: 厂商给出的调用 ID，部分厂商（如 Ollama）不提供，此时为 None，
      由 Agent 循环在执行时补一个。
    - arguments: 原始 JSON 字符串，不在模型层解析。
    """

    id: Optional[str]
    name: str
    arguments: str

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }
        if self.id:
            payload["id"] = self.id
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ToolCall":
        func = data.get("function") or {}
        return cls(
            id=data.get("id"),
            name=func.get("name") or data.get("name") or "",
            arguments=func.get("arguments") or data.get("arguments") or "{}",
        )


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，构造后不可变。

    - tool_calls: 仅当 role 为 "assistant" 且模型触发工具调用时存在。
    - tool_call_id: 仅当 role 为 "tool" 时存在，指向上一条 assistant
      消息中的某个 ToolCall。
    """

    role: Role
    content: str
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"Unknown role: {self.role!r}")
        if self.tool_calls and self.role != "assistant":
            raise ValidationError(code="INVALID_MESSAGE", message="tool_calls only allowed on assistant messages")
        if self.tool_call_id and self.role != "tool":
            raise ValidationError(code="INVALID_MESSAGE", message="tool_call_id only allowed on tool messages")


@dataclass(frozen=True)
class ToolDefinition:
    """一个可供 LLM 调用的工具定义，parameters 为 JSON Schema。"""

    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_function_payload(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @classmethod
    def from_function_payload(cls, data: Dict[str, Any]) -> "ToolDefinition":
        func = data.get("function") or data
        return cls(
            name=func.get("name") or "",
            description=func.get("description") or "",
            parameters=func.get("parameters") or {},
        )


@dataclass
class ChatOptions:
    """一次调用的可选参数。"""

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    tools: Optional[List[ToolDefinition]] = None
    # "auto" / "none" / "required" 或厂商特定的对象，原样透传
    tool_choice: Optional[Any] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ChatResult:
    """一次对话调用的最终结果。

    - content: 文本内容（存在工具调用时可能为空）。
    - model: 实际使用的模型名。
    - usage: 可选的 token 使用统计。
    - tool_calls: 非空表示本轮尚未结束，需要先执行工具。
    """

    content: str
    model: str
    usage: Optional[ChatUsage] = None
    tool_calls: Optional[List[ToolCall]] = None

    @property
    def finished(self) -> bool:
        return not self.tool_calls
