import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

from thread_loop.builtin import FINISH_REQUEST, POST_MESSAGE
from thread_loop.exceptions import RecoveryFailedError
from thread_loop.executor import ToolExecutor
from thread_loop.formatting import extract_readable_text
from thread_loop.model import LLMClient, NextAction, ToolCall
from thread_loop.normalize import normalize_arguments
from thread_loop.state import ThreadState
from thread_loop.tools import Tool, ToolRegistry

if TYPE_CHECKING:
    from thread_loop.config import LoopSettings
    from thread_loop.hooks import HookRegistry, Middleware

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
ERROR_PSEUDO_TOOL = "__loop_error__"
ITERATION_LIMIT_SUMMARY = "Auto-completed due to iteration limit"
IMPLICIT_COMPLETION_SUMMARY = "Auto-completed after message was posted"


class LoopState(str, Enum):
    ITERATING = "iterating"
    EXECUTING = "executing"
    ERROR_RECOVERY = "error_recovery"
    COMPLETED = "completed"


@dataclass
class LoopOutcome:
    state: LoopState
    reason: str  # "terminal" | "no_action" | "implicit_completion" | "iteration_limit" | "recovered"
    iterations: int = 0
    dispatches: int = 0
    result: Any = None


@dataclass
class _RunProgress:
    state: LoopState = LoopState.ITERATING
    iteration: int = 0
    dispatches: int = 0
    run: int = 1
    message_posted: bool = False
    current_tool: Optional[str] = None


class ConversationLoop:
    """Drives one thread's LLM/tool exchange until it terminates.

    Each iteration asks the model for its next action, runs the first proposed
    call and applies the completion policy. A failure anywhere in an iteration
    is shown to the model once for recovery, then the run ends.
    """

    def __init__(
        self,
        llm: LLMClient,
        tools: Union[ToolRegistry, Iterable[Tool]],
        max_iterations: int = MAX_ITERATIONS,
        terminal_tool: str = FINISH_REQUEST,
        message_tools: Iterable[str] = (POST_MESSAGE,),
        executor: Optional[ToolExecutor] = None,
        tool_timeout: Optional[float] = None,
        hooks: Optional["HookRegistry"] = None,
        middlewares: Optional[list["Middleware"]] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self.llm = llm
        self.tools = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.max_iterations = max_iterations
        self.terminal_tool = terminal_tool
        self.message_tools = frozenset(message_tools)
        self.executor = executor or ToolExecutor(self.tools, timeout=tool_timeout)

        if hooks is None:
            from thread_loop.hooks import HookRegistry

            hooks = HookRegistry()
        self.hooks = hooks

        if middlewares:
            self._register_middlewares(middlewares)

    @classmethod
    def from_settings(
        cls,
        llm: LLMClient,
        tools: Union[ToolRegistry, Iterable[Tool]],
        settings: Optional["LoopSettings"] = None,
        **kwargs,
    ) -> "ConversationLoop":
        if settings is None:
            from thread_loop.config import LoopSettings

            settings = LoopSettings()
        return cls(
            llm=llm,
            tools=tools,
            max_iterations=settings.max_iterations,
            terminal_tool=settings.terminal_tool,
            message_tools=settings.message_tools,
            tool_timeout=settings.tool_timeout,
            **kwargs,
        )

    def _register_middlewares(self, middlewares: list["Middleware"]) -> None:
        """Convert middleware instances to HookRegistry handlers."""
        from thread_loop.hooks import HookEvent

        for middleware in middlewares:
            for event in HookEvent:
                handler = getattr(middleware, event.value, None)
                if handler is not None and asyncio.iscoroutinefunction(handler):
                    self.hooks.register_handler(event.value, handler)

    def hook(self, hook_name: str):
        """Decorator for registering hooks directly on the loop.

        Usage:
            @loop.hook('after_tool_call')
            async def log_tool(event):
                print(f"Tool: {event.tool_name}")
        """
        return self.hooks.on(hook_name)

    def run_sync(self, thread_state: ThreadState) -> LoopOutcome:
        """Run the loop synchronously."""
        return asyncio.run(self.run(thread_state))

    async def run(self, thread_state: ThreadState) -> LoopOutcome:
        """Run the loop on ``thread_state``; runs on the same thread are serialized.

        Raises:
            RecoveryFailedError: If an iteration failed and the single recovery
                attempt produced no call or failed as well.
        """
        from thread_loop.hooks import AfterRunEventData, BeforeRunEventData

        async with thread_state.lock:
            start_time = time.time()
            await self.hooks.trigger(
                "before_run", BeforeRunEventData(thread_state=thread_state)
            )

            run_number = thread_state.get_metadata("runs", 0) + 1
            thread_state.set_metadata("runs", run_number)
            progress = _RunProgress(run=run_number)
            try:
                outcome = await self._iterate(thread_state, progress)
            except Exception as e:
                outcome = await self._recover(thread_state, progress, e)

            total_time = (time.time() - start_time) * 1000
            await self.hooks.trigger(
                "after_run",
                AfterRunEventData(
                    thread_state=thread_state,
                    outcome=outcome,
                    total_time_ms=total_time,
                ),
            )
            return outcome

    async def _iterate(self, state: ThreadState, progress: _RunProgress) -> LoopOutcome:
        from thread_loop.hooks import (
            AfterIterationEventData,
            BeforeIterationEventData,
        )

        while progress.iteration < self.max_iterations:
            progress.iteration += 1
            progress.state = LoopState.ITERATING
            progress.current_tool = None
            iteration_start = time.time()
            state.set_metadata("iterations", progress.iteration)
            logger.info(
                "Thread %s: iteration %d/%d",
                state.thread_id,
                progress.iteration,
                self.max_iterations,
            )

            await self.hooks.trigger(
                "before_iteration",
                BeforeIterationEventData(thread_state=state, iteration=progress.iteration),
            )

            action = await self._next_action(state, progress)
            if not action.tool_calls:
                logger.info("Thread %s: model proposed no action", state.thread_id)
                return self._finish(progress, "no_action")

            if len(action.tool_calls) > 1:
                logger.info(
                    "Thread %s: ignoring %d extra proposed calls",
                    state.thread_id,
                    len(action.tool_calls) - 1,
                )
            call = action.tool_calls[0]
            result, executed = await self._dispatch(
                state, progress, call.tool, call.arguments()
            )

            if call.tool == self.terminal_tool:
                return self._finish(progress, "terminal", result)

            # a ledger hit sent nothing
            if call.tool in self.message_tools and executed and result is not None:
                self._remember_posted(state, call, result)
                progress.message_posted = True

            await self.hooks.trigger(
                "after_iteration",
                AfterIterationEventData(
                    thread_state=state,
                    iteration=progress.iteration,
                    elapsed_time_ms=(time.time() - iteration_start) * 1000,
                ),
            )

            # Posted a reply and still going after the first iteration.
            if progress.message_posted and progress.iteration > 1:
                logger.warning(
                    "Thread %s: message posted without %s, completing",
                    state.thread_id,
                    self.terminal_tool,
                )
                result = await self._force_completion(
                    state,
                    progress,
                    IMPLICIT_COMPLETION_SUMMARY,
                    f"Message was posted but {self.terminal_tool} wasn't called "
                    f"(run {progress.run})",
                )
                return self._finish(progress, "implicit_completion", result)

        logger.warning(
            "Thread %s: reached %d iterations, completing",
            state.thread_id,
            self.max_iterations,
        )
        result = await self._force_completion(
            state,
            progress,
            ITERATION_LIMIT_SUMMARY,
            f"Reached iteration limit ({self.max_iterations}) on run {progress.run}",
        )
        state.add_system_note(
            f"Reached the maximum of {self.max_iterations} iterations without "
            f"{self.terminal_tool}; the request was completed automatically."
        )
        return self._finish(progress, "iteration_limit", result)

    async def _recover(
        self, state: ThreadState, progress: _RunProgress, error: Exception
    ) -> LoopOutcome:
        from thread_loop.hooks import OnRecoveryEventData, OnToolErrorEventData

        progress.state = LoopState.ERROR_RECOVERY
        failed_tool = progress.current_tool
        logger.warning(
            "Thread %s: iteration %d failed (%s), asking the model to recover",
            state.thread_id,
            progress.iteration,
            error,
        )

        state.record_failure(
            ERROR_PSEUDO_TOOL, error, iteration=progress.iteration, tool=failed_tool
        )
        state.set_metadata("last_error", {"message": str(error), "kind": type(error).__name__})
        state.add_system_note(
            f"Error occurred while running {failed_tool or 'the conversation'}: "
            f"{error}. Decide how to continue or call {self.terminal_tool}."
        )
        await self.hooks.trigger(
            "on_tool_error",
            OnToolErrorEventData(
                thread_state=state,
                tool_name=failed_tool,
                error=error,
                error_message=str(error),
                iteration=progress.iteration,
            ),
        )

        async def report(action: Optional[NextAction], succeeded: bool) -> None:
            await self.hooks.trigger(
                "on_recovery",
                OnRecoveryEventData(
                    thread_state=state,
                    error=error,
                    next_action=action,
                    succeeded=succeeded,
                ),
            )

        try:
            action = await self.llm.next_action(state, self.tools)
        except Exception as e:
            await report(None, False)
            raise RecoveryFailedError(
                f"Model call failed during recovery: {e}", cause=e
            ) from e

        if not action.tool_calls:
            await report(action, False)
            raise RecoveryFailedError(
                f"Model proposed no action after failure: {error}", cause=error
            ) from error

        call = action.tool_calls[0]
        try:
            result, executed = await self._dispatch(
                state, progress, call.tool, call.arguments()
            )
        except Exception as e:
            await report(action, False)
            raise RecoveryFailedError(
                f"Recovery action '{call.tool}' failed: {e}", cause=e
            ) from e

        if call.tool in self.message_tools and executed and result is not None:
            self._remember_posted(state, call, result)
        await report(action, True)

        reason = "terminal" if call.tool == self.terminal_tool else "recovered"
        return self._finish(progress, reason, result)

    async def _next_action(self, state: ThreadState, progress: _RunProgress) -> NextAction:
        from thread_loop.hooks import AfterModelCallEventData, BeforeModelCallEventData

        await self.hooks.trigger(
            "before_model_call",
            BeforeModelCallEventData(thread_state=state, iteration=progress.iteration),
        )
        model_start = time.time()
        action = await self.llm.next_action(state, self.tools)
        await self.hooks.trigger(
            "after_model_call",
            AfterModelCallEventData(
                thread_state=state,
                next_action=action,
                response_time_ms=(time.time() - model_start) * 1000,
            ),
        )
        return action

    async def _dispatch(
        self,
        state: ThreadState,
        progress: _RunProgress,
        tool_name: str,
        arguments: Any,
        forced: bool = False,
    ) -> tuple[Any, bool]:
        from thread_loop.hooks import AfterToolCallEventData, BeforeToolCallEventData

        progress.state = LoopState.EXECUTING
        progress.current_tool = tool_name
        await self.hooks.trigger(
            "before_tool_call",
            BeforeToolCallEventData(
                thread_state=state,
                tool_name=tool_name,
                arguments=arguments,
                iteration=progress.iteration,
                forced=forced,
            ),
        )

        tool_start = time.time()
        result, executed = await self.executor.run(tool_name, arguments, state)
        progress.dispatches += 1

        await self.hooks.trigger(
            "after_tool_call",
            AfterToolCallEventData(
                thread_state=state,
                tool_name=tool_name,
                arguments=arguments,
                result=result,
                execution_time_ms=(time.time() - tool_start) * 1000,
                forced=forced,
                executed=executed,
            ),
        )
        return result, executed

    async def _force_completion(
        self, state: ThreadState, progress: _RunProgress, summary: str, reasoning: str
    ) -> Any:
        result, _ = await self._dispatch(
            state,
            progress,
            self.terminal_tool,
            {"summary": summary, "reasoning": reasoning},
            forced=True,
        )
        return result

    def _remember_posted(self, state: ThreadState, call: ToolCall, result: Any) -> None:
        """Add what was sent to the history so later model turns can see it."""
        args = normalize_arguments(call.tool, call.arguments())
        text = extract_readable_text(args) or f"[{call.tool} sent a message]"
        state.add_message(text, is_user=False, source="assistant")

        if isinstance(result, dict):
            message_id = result.get("message_id") or result.get("ts")
            if message_id:
                state.mark_sent(str(message_id))

    def _finish(
        self, progress: _RunProgress, reason: str, result: Any = None
    ) -> LoopOutcome:
        progress.state = LoopState.COMPLETED
        logger.info(
            "Run completed (%s) after %d iterations, %d dispatches",
            reason,
            progress.iteration,
            progress.dispatches,
        )
        return LoopOutcome(
            state=LoopState.COMPLETED,
            reason=reason,
            iterations=progress.iteration,
            dispatches=progress.dispatches,
            result=result,
        )
