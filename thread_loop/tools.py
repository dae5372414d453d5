from typing import TYPE_CHECKING, Any, Iterable, Iterator, Optional

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from thread_loop.state import ThreadState


class ToolInput(BaseModel):
    """Subclass this for tool-specific input validation.

    Every tool accepts an optional ``reasoning`` string; unknown keys are
    ignored so a chatty model doesn't fail validation.
    """

    model_config = ConfigDict(extra="ignore")

    reasoning: Optional[str] = None


class Tool:
    name: str
    description: str
    input_model: type[BaseModel] = ToolInput

    def schema(self) -> dict:
        """Return JSON schema from Pydantic model."""
        return self.input_model.model_json_schema()

    async def execute(self, args: Any, state: "ThreadState") -> Any:
        """Execute tool with validated ``args`` against the thread ``state``.

        Pydantic validates inputs before this is called.
        """
        raise NotImplementedError


class ToolRegistry:
    """Closed name -> tool map consulted by the executor and the model."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> dict[str, dict]:
        return {name: tool.schema() for name, tool in self._tools.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
