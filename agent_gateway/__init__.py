"""Agent Gateway 顶层包。

该包提供对话 Agent 网关的核心实现，
包括配置加载、统一对话模型、Provider 协议适配、流式中继、
有界的工具调用循环、连接级取消管理与会话持久化等能力。
"""

__version__ = "0.1.0"

from agent_gateway.agents.agent_loop import AgentEngine
from agent_gateway.agents.supervisor import ConnectionSupervisor
from agent_gateway.providers import create_provider

__all__ = ["AgentEngine", "ConnectionSupervisor", "create_provider", "__version__"]
