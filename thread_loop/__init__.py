from thread_loop.adaptors.openai import OpenAIAdaptor

# Conditional import for the optional SDK-based client
try:
    from thread_loop.adaptors.anthropic import AnthropicAdaptor
except ImportError:
    pass

from thread_loop.builtin import (
    FINISH_REQUEST,
    POST_MESSAGE,
    FinishRequestTool,
    OutboundMessage,
    PostMessageTool,
)
from thread_loop.config import LoopSettings, configure_logging
from thread_loop.context import MessageContext
from thread_loop.exceptions import (
    DuplicateExecutionError,
    LLMError,
    MalformedArgumentsError,
    RecoveryFailedError,
    ThreadLoopError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from thread_loop.executor import ToolExecutor
from thread_loop.hooks import (
    AfterIterationEventData,
    AfterModelCallEventData,
    AfterRunEventData,
    AfterToolCallEventData,
    BeforeIterationEventData,
    BeforeModelCallEventData,
    BeforeRunEventData,
    BeforeToolCallEventData,
    HookEvent,
    HookRegistry,
    Middleware,
    OnRecoveryEventData,
    OnToolErrorEventData,
)
from thread_loop.loop import (
    ERROR_PSEUDO_TOOL,
    MAX_ITERATIONS,
    ConversationLoop,
    LoopOutcome,
    LoopState,
)
from thread_loop.model import LLMClient, NextAction, ToolCall
from thread_loop.normalize import canonical_json, fingerprint, normalize_arguments
from thread_loop.state import (
    ButtonState,
    EvictionPolicy,
    ExecutionRecord,
    NoEviction,
    ThreadState,
    ThreadStateStore,
    TurnRecord,
)
from thread_loop.tools import Tool, ToolInput, ToolRegistry

__all__ = [
    # Core
    "ConversationLoop",
    "LoopOutcome",
    "LoopState",
    "MAX_ITERATIONS",
    "ERROR_PSEUDO_TOOL",
    "ToolExecutor",
    "LLMClient",
    "NextAction",
    "ToolCall",
    "OpenAIAdaptor",
    # State
    "ThreadState",
    "ThreadStateStore",
    "TurnRecord",
    "ExecutionRecord",
    "ButtonState",
    "EvictionPolicy",
    "NoEviction",
    "MessageContext",
    # Tools
    "Tool",
    "ToolInput",
    "ToolRegistry",
    "FinishRequestTool",
    "PostMessageTool",
    "OutboundMessage",
    "FINISH_REQUEST",
    "POST_MESSAGE",
    "normalize_arguments",
    "canonical_json",
    "fingerprint",
    # Config
    "LoopSettings",
    "configure_logging",
    # Hooks
    "HookRegistry",
    "HookEvent",
    "Middleware",
    # Hook Event Data
    "BeforeRunEventData",
    "AfterRunEventData",
    "BeforeIterationEventData",
    "AfterIterationEventData",
    "BeforeModelCallEventData",
    "AfterModelCallEventData",
    "BeforeToolCallEventData",
    "AfterToolCallEventData",
    "OnToolErrorEventData",
    "OnRecoveryEventData",
    # Exceptions
    "ThreadLoopError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "MalformedArgumentsError",
    "DuplicateExecutionError",
    "RecoveryFailedError",
    "LLMError",
]

if "AnthropicAdaptor" in globals():
    __all__.append("AnthropicAdaptor")
