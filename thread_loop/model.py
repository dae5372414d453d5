from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from thread_loop.state import ThreadState
    from thread_loop.tools import ToolRegistry


@dataclass
class ToolCall:
    tool: str
    parameters: Any = field(default_factory=dict)  # usually a dict, raw if unparseable
    reasoning: Optional[str] = None
    id: Optional[str] = None

    def arguments(self) -> Any:
        """Parameters with the call-level reasoning merged in."""
        if not self.reasoning or not isinstance(self.parameters, dict):
            return self.parameters
        return {**self.parameters, "reasoning": self.reasoning}


@dataclass
class NextAction:
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning: Optional[str] = None
    content: str = ""


class LLMClient:
    async def next_action(
        self,
        state: "ThreadState",
        tools: "ToolRegistry",
        **kwargs,
    ) -> NextAction:
        """Ask the model what to do next given the whole thread state."""
        raise NotImplementedError
