from typing import Any, Iterator

from iterai.errors import IterAIConfigurationError
from iterai.llm.models import LLMToolSpec

from .tool import Tool

type ToolKey = tuple[str | None, str]


class ToolRegistry:
    """
    Dispatch table of tools keyed by (plugin_name, name).

    Example:

        @tool(plugin_name="math")
        def add(a: Annotated[int, spec()], b: Annotated[int, spec()]) -> int:
            return a + b

        @tool(plugin_name="weather", required=True)
        def forecast(city: Annotated[str, spec(description="City name")]) -> str:
            ...

        registry = ToolRegistry(add, forecast)

        registry.get("add", "math")  # add
        registry.required()          # [forecast]
    """

    def __init__(self, *tools: Tool[Any, Any]) -> None:
        self._tools: dict[ToolKey, Tool[Any, Any]] = {}
        if tools:
            self.register_tools(*tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool[Any, Any]]:
        return iter(self._tools.values())

    def __contains__(self, key: object) -> bool:
        return key in self._tools

    @property
    def tools(self) -> dict[ToolKey, Tool[Any, Any]]:
        return self._tools

    def register_tools(self, *tools: Tool[Any, Any]) -> None:
        for tool in tools:
            if tool.key in self._tools:
                raise IterAIConfigurationError(
                    f"Tool {tool.name!r} of plugin {tool.plugin_name!r} is already registered"
                )
            self._tools[tool.key] = tool

    def remove_tool(self, tool: Tool[Any, Any]) -> None:
        self._tools.pop(tool.key, None)

    def get(self, name: str, plugin_name: str | None = None) -> Tool[Any, Any] | None:
        """Find a tool; without a plugin name, a unique match by name wins."""
        if (found := self._tools.get((plugin_name, name))) is not None:
            return found
        if plugin_name is None:
            matches = [t for t in self._tools.values() if t.name == name]
            if len(matches) == 1:
                return matches[0]
        return None

    def required(self) -> list[Tool[Any, Any]]:
        return [t for t in self._tools.values() if t.required]

    def specs(self) -> list[LLMToolSpec]:
        return [t.tool_spec for t in self._tools.values()]
