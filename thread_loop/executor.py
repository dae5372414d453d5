import asyncio
import logging
from typing import Any, Optional

from pydantic import ValidationError

from thread_loop.exceptions import (
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from thread_loop.normalize import fingerprint, normalize_arguments
from thread_loop.state import ThreadState
from thread_loop.tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Runs each distinct tool call at most once per thread.

    Args:
        registry: Tools the model may call.
        timeout: Seconds a single tool may run before it's treated as failed.
            ``None`` disables the limit.
    """

    def __init__(self, registry: ToolRegistry, timeout: Optional[float] = None):
        self.registry = registry
        self.timeout = timeout

    async def execute(self, tool_name: str, raw_args: Any, state: ThreadState) -> Any:
        """Normalize, deduplicate, dispatch and record one call.

        Returns the tool result, or the stored result when an identical call
        was already executed on this thread.

        Raises:
            MalformedArgumentsError: If the arguments can't be repaired.
            ToolNotFoundError: If no tool is registered under ``tool_name``.
            ToolExecutionError: If validation or the tool itself fails.
        """
        result, _ = await self.run(tool_name, raw_args, state)
        return result

    async def run(
        self, tool_name: str, raw_args: Any, state: ThreadState
    ) -> tuple[Any, bool]:
        """Like ``execute`` but also reports whether the tool actually ran.

        The flag is ``False`` when the result came from the ledger.
        """
        args = normalize_arguments(tool_name, raw_args)
        key = fingerprint(tool_name, args)

        if state.has_executed(key):
            logger.warning(
                "Skipping duplicate %s call on thread %s", tool_name, state.thread_id
            )
            return state.get_result(key), False

        tool = self.registry.resolve(tool_name)
        if tool is None:
            error = ToolNotFoundError(f"Tool '{tool_name}' not found")
            state.record_execution(key, tool_name, args, error=error)
            raise error

        logger.info("Executing tool %s on thread %s", tool_name, state.thread_id)
        try:
            validated = tool.input_model(**args)
            result = await self._invoke(tool, validated, state)
        except ToolTimeoutError as e:
            state.record_execution(key, tool_name, args, error=e)
            logger.warning("Tool %s timed out", tool_name)
            raise
        except ValidationError as e:
            state.record_execution(key, tool_name, args, error=e)
            logger.warning("Invalid arguments for %s: %s", tool_name, e)
            raise ToolExecutionError(
                f"Validation error in '{tool_name}': {e}", tool_name=tool_name, cause=e
            ) from e
        except Exception as e:
            state.record_execution(key, tool_name, args, error=e)
            logger.warning("Tool %s failed: %s", tool_name, e)
            raise ToolExecutionError(
                f"Tool '{tool_name}' failed: {e}", tool_name=tool_name, cause=e
            ) from e

        state.record_execution(key, tool_name, args, result=result)
        return result, True

    async def _invoke(self, tool: Tool, args: Any, state: ThreadState) -> Any:
        if self.timeout is None:
            return await tool.execute(args, state)
        try:
            return await asyncio.wait_for(tool.execute(args, state), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(
                f"Tool '{tool.name}' timed out after {self.timeout}s",
                tool_name=tool.name,
                cause=e,
            ) from e
