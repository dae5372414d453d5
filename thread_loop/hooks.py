"""Hook system for thread-loop.

Lets callers observe a conversation run (logging, metrics, tracing) without
touching the loop. Handlers are async callables that receive one event
dataclass; they can't change what the loop does next.

Architecture:
- HookRegistry is the core implementation
- ``@hooks.on``, ``@loop.hook`` and Middleware are convenience wrappers
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Available hook points in a conversation run."""

    BEFORE_RUN = "before_run"
    AFTER_RUN = "after_run"

    BEFORE_ITERATION = "before_iteration"
    AFTER_ITERATION = "after_iteration"

    BEFORE_MODEL_CALL = "before_model_call"
    AFTER_MODEL_CALL = "after_model_call"

    BEFORE_TOOL_CALL = "before_tool_call"
    AFTER_TOOL_CALL = "after_tool_call"
    ON_TOOL_ERROR = "on_tool_error"

    ON_RECOVERY = "on_recovery"


# ============================================================================
# Hook Event Data Classes
# ============================================================================


@dataclass
class BeforeRunEventData:
    thread_state: Any  # ThreadState
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AfterRunEventData:
    thread_state: Any
    outcome: Any  # LoopOutcome
    total_time_ms: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class BeforeIterationEventData:
    thread_state: Any
    iteration: int


@dataclass
class AfterIterationEventData:
    thread_state: Any
    iteration: int
    elapsed_time_ms: float


@dataclass
class BeforeModelCallEventData:
    thread_state: Any
    iteration: int


@dataclass
class AfterModelCallEventData:
    thread_state: Any
    next_action: Any  # NextAction
    response_time_ms: float


@dataclass
class BeforeToolCallEventData:
    thread_state: Any
    tool_name: str
    arguments: Any
    iteration: int
    forced: bool = False


@dataclass
class AfterToolCallEventData:
    thread_state: Any
    tool_name: str
    arguments: Any
    result: Any
    execution_time_ms: float
    forced: bool = False
    executed: bool = True  # False when the result came from the ledger


@dataclass
class OnToolErrorEventData:
    """Called when an iteration fails, before recovery starts."""

    thread_state: Any
    tool_name: Optional[str]
    error: Exception
    error_message: str
    iteration: int


@dataclass
class OnRecoveryEventData:
    """Called after the single recovery attempt, whatever its outcome."""

    thread_state: Any
    error: Exception
    next_action: Any  # NextAction or None if the model call failed
    succeeded: bool


# ============================================================================
# Hook Registry
# ============================================================================


class HookRegistry:
    """Central registry for all hooks.

    Usage:
        hooks = HookRegistry()

        @hooks.on('after_tool_call')
        async def log_tool(event):
            print(f"Tool: {event.tool_name}")

        # Or direct registration
        hooks.register_handler('on_recovery', my_handler)
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {
            event.value: [] for event in HookEvent
        }

    def on(self, hook_name: str):
        """Decorator for registering hook handlers."""

        def decorator(func: Callable) -> Callable:
            self.register_handler(hook_name, func)
            return func

        return decorator

    def register_handler(self, hook_name: str, handler: Callable) -> None:
        """Register a hook handler.

        Raises:
            ValueError: If hook_name is not valid
        """
        if hook_name not in self._handlers:
            valid_hooks = [e.value for e in HookEvent]
            raise ValueError(
                f"Invalid hook name '{hook_name}'. Valid hooks: {valid_hooks}"
            )
        self._handlers[hook_name].append(handler)

    async def trigger(self, hook_name: str, event_data: Any) -> None:
        """Run every handler for a hook; handler failures are logged only."""
        for handler in self._handlers.get(hook_name, []):
            try:
                await handler(event_data)
            except Exception as e:
                logger.warning("Hook '%s' raised exception: %s", hook_name, e)

    def has_handlers(self, hook_name: str) -> bool:
        return len(self._handlers.get(hook_name, [])) > 0

    def clear(self) -> None:
        """Clear all handlers (useful for testing)."""
        for hook_name in self._handlers:
            self._handlers[hook_name] = []


# ============================================================================
# Middleware Base Class (Optional, for stateful handlers)
# ============================================================================


class Middleware:
    """Base class for stateful hook handlers.

    Override the methods for the hooks you care about:

        class CountingMiddleware(Middleware):
            def __init__(self):
                self.tool_calls = 0

            async def after_tool_call(self, event):
                self.tool_calls += 1
    """

    async def before_run(self, event: BeforeRunEventData) -> None:
        pass

    async def after_run(self, event: AfterRunEventData) -> None:
        pass

    async def before_iteration(self, event: BeforeIterationEventData) -> None:
        pass

    async def after_iteration(self, event: AfterIterationEventData) -> None:
        pass

    async def before_model_call(self, event: BeforeModelCallEventData) -> None:
        pass

    async def after_model_call(self, event: AfterModelCallEventData) -> None:
        pass

    async def before_tool_call(self, event: BeforeToolCallEventData) -> None:
        pass

    async def after_tool_call(self, event: AfterToolCallEventData) -> None:
        pass

    async def on_tool_error(self, event: OnToolErrorEventData) -> None:
        pass

    async def on_recovery(self, event: OnRecoveryEventData) -> None:
        pass
