"""Per-thread conversation state and the store that owns it.

A ``ThreadState`` holds everything the loop and the tools know about one
conversation: the turn history shown to the model, the execution ledger
used for deduplication, free-form metadata, interactive button states and
the ids of messages the bot posted itself.

``ThreadStateStore`` hands out exactly one ``ThreadState`` per thread id for
the lifetime of the store. Nothing is persisted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator, Optional

from thread_loop.exceptions import DuplicateExecutionError

if TYPE_CHECKING:
    from thread_loop.context import MessageContext

logger = logging.getLogger(__name__)

BUTTON_ACTIVE = "active"
BUTTON_RESOLVED = "resolved"


@dataclass
class TurnRecord:
    text: str
    is_user: bool
    timestamp: float = field(default_factory=time.time)
    thread_position: Optional[int] = None
    is_system_note: bool = False
    is_button_click: bool = False
    source: str = ""  # "user" | "assistant" | "system" | "button"

    def __post_init__(self):
        if not self.source:
            self.source = "user" if self.is_user else "assistant"


@dataclass
class ExecutionRecord:
    tool_name: str
    arguments: dict
    result: Any = None
    timestamp: float = field(default_factory=time.time)
    error: Optional[dict] = None  # {"message": ..., "kind": ...}

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class ButtonState:
    state: str = BUTTON_ACTIVE  # "active" | "resolved"
    metadata: Optional[dict] = None


@dataclass
class ThreadState:
    thread_id: str
    messages: list[TurnRecord] = field(default_factory=list)
    ledger: dict[str, ExecutionRecord] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    buttons: dict[str, ButtonState] = field(default_factory=dict)
    sent_message_ids: set[str] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    # --- messages ---

    def add_message(
        self,
        text: str,
        is_user: bool,
        thread_position: Optional[int] = None,
        is_system_note: bool = False,
        is_button_click: bool = False,
        source: str = "",
    ) -> TurnRecord:
        """Append a turn; positions default to the next one and never go back."""
        last = self._last_position()
        if thread_position is None:
            thread_position = last + 1
        elif thread_position < last:
            raise ValueError(
                f"Thread position {thread_position} is before last position {last}"
            )

        record = TurnRecord(
            text=text,
            is_user=is_user,
            thread_position=thread_position,
            is_system_note=is_system_note,
            is_button_click=is_button_click,
            source=source,
        )
        self.messages.append(record)
        return record

    def add_system_note(self, text: str) -> TurnRecord:
        return self.add_message(
            text, is_user=False, is_system_note=True, source="system"
        )

    def _last_position(self) -> int:
        for record in reversed(self.messages):
            if record.thread_position is not None:
                return record.thread_position
        return 0

    # --- metadata ---

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    def set_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value

    def attach_context(self, context: "MessageContext") -> TurnRecord:
        """Store an inbound event and add it to the history."""
        self.set_metadata("context", context)
        self.set_metadata("conversation_info", context.conversation_info())
        self.set_metadata("last_message_time", time.time())
        return self.add_message(
            context.text,
            is_user=True,
            is_button_click=context.is_button_click,
            source="button" if context.is_button_click else "user",
        )

    @property
    def context(self) -> Optional["MessageContext"]:
        return self.metadata.get("context")

    @property
    def channel_id(self) -> Optional[str]:
        context = self.context
        return getattr(context, "channel_id", None)

    @property
    def thread_ts(self) -> str:
        """Timestamp to reply under: the context's thread ts, else the thread id."""
        context = self.context
        thread_ts = getattr(context, "thread_ts", None)
        return thread_ts or self.thread_id

    # --- buttons ---

    def get_button_state(self, action_id: str) -> Optional[ButtonState]:
        return self.buttons.get(action_id)

    def set_button_state(
        self, action_id: str, state: str, metadata: Optional[dict] = None
    ) -> ButtonState:
        if state not in (BUTTON_ACTIVE, BUTTON_RESOLVED):
            raise ValueError(f"Unknown button state '{state}'")
        button = ButtonState(state=state, metadata=metadata)
        self.buttons[action_id] = button
        return button

    def active_buttons(self) -> dict[str, ButtonState]:
        return {
            action_id: button
            for action_id, button in self.buttons.items()
            if button.state == BUTTON_ACTIVE
        }

    # --- sent messages ---

    def mark_sent(self, message_id: str) -> None:
        self.sent_message_ids.add(message_id)

    def is_own_message(self, message_id: str) -> bool:
        return message_id in self.sent_message_ids

    # --- execution ledger ---

    def has_executed(self, fingerprint: str) -> bool:
        return fingerprint in self.ledger

    def get_record(self, fingerprint: str) -> Optional[ExecutionRecord]:
        return self.ledger.get(fingerprint)

    def get_result(self, fingerprint: str) -> Any:
        record = self.ledger.get(fingerprint)
        return record.result if record is not None else None

    def record_execution(
        self,
        fingerprint: str,
        tool_name: str,
        arguments: dict,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> ExecutionRecord:
        if fingerprint in self.ledger:
            raise DuplicateExecutionError(
                f"Execution '{fingerprint}' is already recorded"
            )
        record = ExecutionRecord(
            tool_name=tool_name,
            arguments=arguments,
            result=result,
            error=describe_error(error) if error is not None else None,
        )
        self.ledger[fingerprint] = record
        return record

    def record_failure(
        self, pseudo_tool: str, error: BaseException, **details: Any
    ) -> ExecutionRecord:
        """Record a failure that didn't come from a single tool execution."""
        key = f"{pseudo_tool}-{len(self.ledger)}-{time.time_ns()}"
        record = ExecutionRecord(
            tool_name=pseudo_tool,
            arguments=dict(details),
            error=describe_error(error),
        )
        self.ledger[key] = record
        return record

    def recent_executions(self, n: int = 10) -> list[ExecutionRecord]:
        """Return the last ``n`` ledger entries, newest first."""
        if n <= 0:
            return []
        return list(reversed(list(self.ledger.values())[-n:]))

    def summary_for_llm(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "channel_id": self.channel_id,
            "thread_ts": self.thread_ts,
            "sent_messages_count": len(self.sent_message_ids),
            "active_buttons": [
                {"action_id": action_id, "metadata": button.metadata}
                for action_id, button in self.active_buttons().items()
            ],
            "recent_tool_results": [
                {"tool": record.tool_name, "success": record.succeeded}
                for record in self.recent_executions(5)
            ],
        }


def describe_error(error: BaseException) -> dict:
    return {"message": str(error), "kind": type(error).__name__}


class EvictionPolicy:
    """Decides which threads a store may forget.

    The store calls ``select`` after every insert. The base policy keeps
    everything; subclass it for TTL or LRU behaviour.
    """

    def select(self, states: dict[str, ThreadState]) -> list[str]:
        return []


class NoEviction(EvictionPolicy):
    pass


class ThreadStateStore:
    """Lazily creates and keeps one ``ThreadState`` per thread id."""

    def __init__(self, eviction_policy: Optional[EvictionPolicy] = None):
        self._states: dict[str, ThreadState] = {}
        self.eviction_policy = eviction_policy or NoEviction()

    def get_or_create(self, thread_id: str) -> ThreadState:
        state = self._states.get(thread_id)
        if state is None:
            logger.info("Creating thread state for %s", thread_id)
            state = ThreadState(thread_id=thread_id)
            self._states[thread_id] = state
            self._evict(keep=thread_id)
        return state

    def get(self, thread_id: str) -> Optional[ThreadState]:
        return self._states.get(thread_id)

    def thread_ids(self) -> list[str]:
        return list(self._states)

    def _evict(self, keep: str) -> None:
        for thread_id in self.eviction_policy.select(self._states):
            if thread_id != keep and thread_id in self._states:
                logger.info("Evicting thread state for %s", thread_id)
                del self._states[thread_id]

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[ThreadState]:
        return iter(list(self._states.values()))
