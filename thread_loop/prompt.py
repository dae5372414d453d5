"""Turns a thread state into the chat transcript sent to a model."""

from dataclasses import dataclass
from typing import Optional

from thread_loop.normalize import canonical_json
from thread_loop.state import ExecutionRecord, ThreadState

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant taking part in a chat thread.

Every turn you choose exactly one tool call:
1. Use post_message to reply to the user (once per request).
2. After replying, call finish_request to end your turn.
3. If a tool reports an error, decide whether to try something else or
   finish the request.
Never repeat a message you already sent; your previous responses are shown
in the history."""

RESULT_PREVIEW_CHARS = 500


@dataclass
class Message:
    role: str  # "system" | "user" | "assistant"
    content: str


def build_messages(
    state: ThreadState,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    history_limit: Optional[int] = None,
    execution_limit: int = 10,
) -> list[Message]:
    messages = [Message(role="system", content=_system_content(state, system_prompt))]

    history = state.messages
    if history_limit is not None:
        history = history[-history_limit:] if history_limit > 0 else []

    for record in history:
        position = f" [MESSAGE #{record.thread_position}]" if record.thread_position else ""
        text = record.text or "No text content"
        if record.is_system_note:
            messages.append(Message(role="system", content=f"SYSTEM NOTE{position}: {text}"))
        elif record.is_user:
            label = "BUTTON CLICK" if record.is_button_click else "USER MESSAGE"
            messages.append(Message(role="user", content=f"{label}{position}: {text}"))
        else:
            messages.append(
                Message(role="assistant", content=f"YOUR PREVIOUS RESPONSE{position}: {text}")
            )

    executions = state.recent_executions(execution_limit)
    if executions:
        lines = [format_execution(record) for record in reversed(executions)]
        messages.append(
            Message(role="system", content="TOOL RESULTS (oldest first):\n" + "\n".join(lines))
        )
    return messages


def format_execution(record: ExecutionRecord) -> str:
    if record.error is not None:
        outcome = f"error ({record.error['kind']}): {record.error['message']}"
    else:
        outcome = canonical_json(record.result)
        if len(outcome) > RESULT_PREVIEW_CHARS:
            outcome = outcome[:RESULT_PREVIEW_CHARS] + "..."
    return f"- {record.tool_name} {canonical_json(record.arguments)} -> {outcome}"


def _system_content(state: ThreadState, system_prompt: str) -> str:
    context = state.context
    if context is None:
        chat_type = "Unknown"
    elif context.is_direct_message:
        chat_type = "Direct Message"
    elif context.is_threaded_conversation:
        chat_type = "Thread"
    else:
        chat_type = "Channel Message"

    return (
        f"{system_prompt}\n\n"
        f"=== THREAD CONTEXT ===\n"
        f"- Chat Type: {chat_type}\n"
        f"- State: {canonical_json(state.summary_for_llm())}"
    )
