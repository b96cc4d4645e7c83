import logging
from typing import Dict, Iterable, List

from agent_gateway.domain.models import ToolDefinition
from agent_gateway.infrastructure.logging.logger import log_event
from .definitions import Tool


class ToolRegistry:
    """按名称分发工具调用，invoke 永不抛异常。"""

    def __init__(self, tools: Iterable[Tool]):
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self._tools[tool.definition.name] = tool

    def definitions(self) -> List[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    async def invoke(self, name: str, arguments: str) -> str:
        tool = self._tools.get(name)
        if tool is None:
            log_event(logging.WARNING, "Tool not found", {"tool": name})
            return f"Error: Tool '{name}' not found"
        try:
            return await tool.call(arguments)
        except Exception as exc:
            log_event(logging.ERROR, "Tool call failed", {"tool": name}, error=str(exc))
            return f"Error: {exc}"


def default_registry() -> ToolRegistry:
    from .search import SearchTool

    return ToolRegistry([SearchTool()])
