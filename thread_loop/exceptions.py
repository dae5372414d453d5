from typing import Optional


class ThreadLoopError(Exception):
    """Base exception for thread-loop errors."""


class ToolNotFoundError(ThreadLoopError):
    """Raised when the model proposes a tool that isn't registered."""


class ToolExecutionError(ThreadLoopError):
    """Raised when a tool's own logic (or its input validation) fails."""

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.tool_name = tool_name
        self.cause = cause


class ToolTimeoutError(ToolExecutionError):
    """Raised when a tool doesn't finish within the executor timeout."""


class MalformedArgumentsError(ThreadLoopError):
    """Raised when proposed arguments can't be repaired into an object."""


class DuplicateExecutionError(ThreadLoopError):
    """Raised when a fingerprint is recorded in the ledger twice."""


class RecoveryFailedError(ThreadLoopError):
    """Raised when the single recovery attempt after a failure doesn't succeed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class LLMError(ThreadLoopError):
    """Raised when the model API returns an error or an unusable response."""
