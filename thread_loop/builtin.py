"""Tools every conversation needs: posting a reply and finishing the request."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from thread_loop.state import BUTTON_ACTIVE, BUTTON_RESOLVED, ThreadState
from thread_loop.tools import Tool, ToolInput

logger = logging.getLogger(__name__)

FINISH_REQUEST = "finish_request"
POST_MESSAGE = "post_message"


class FinishRequestInput(ToolInput):
    summary: Optional[str] = Field(
        default=None, description="Brief summary of the completed action"
    )


class FinishRequestTool(Tool):
    name = FINISH_REQUEST
    description = "Signals the end of processing for a user request"
    input_model = FinishRequestInput

    async def execute(self, args: FinishRequestInput, state: ThreadState) -> dict:
        selection = state.get_metadata("last_button_selection")
        if selection:
            action_id = selection.get("action_id")
            button = state.get_button_state(action_id) if action_id else None
            if button is not None and button.state == BUTTON_ACTIVE:
                state.set_button_state(action_id, BUTTON_RESOLVED, button.metadata)
                logger.info("Resolved button %s on finish", action_id)

        return {
            "complete": True,
            "timestamp": time.time(),
            "summary": args.summary or "Request completed",
            "reasoning": args.reasoning,
        }


class ButtonSpec(BaseModel):
    text: str
    value: Optional[str] = None
    style: Optional[str] = None


class PostMessageInput(ToolInput):
    text: str = Field(description="Message content; supports #header:/#section: blocks")
    color: Optional[str] = Field(default=None, description="Sidebar color")
    buttons: list[Union[ButtonSpec, str]] = Field(default_factory=list)


@dataclass
class OutboundMessage:
    channel_id: Optional[str]
    thread_ts: str
    text: str
    color: Optional[str] = None
    buttons: list[dict] = field(default_factory=list)


SendCallback = Callable[[OutboundMessage], Awaitable[Optional[str]]]


class PostMessageTool(Tool):
    """Posts a reply into the thread through a channel-specific ``send`` callback.

    The callback returns the platform id of the posted message (or ``None``
    if the platform doesn't give one back).
    """

    name = POST_MESSAGE
    description = (
        "Posts a message to the conversation. Use this for all user-facing "
        "responses, then call finish_request."
    )
    input_model = PostMessageInput

    def __init__(self, send: SendCallback):
        self._send = send

    async def execute(self, args: PostMessageInput, state: ThreadState) -> dict:
        buttons = [self._button_payload(button) for button in args.buttons]
        message = OutboundMessage(
            channel_id=state.channel_id,
            thread_ts=state.thread_ts,
            text=args.text,
            color=args.color,
            buttons=buttons,
        )
        message_id = await self._send(message)
        if message_id:
            state.mark_sent(message_id)

        for button in buttons:
            state.set_button_state(
                button["action_id"],
                BUTTON_ACTIVE,
                {"text": button["text"], "value": button["value"], "message_id": message_id},
            )

        return {
            "message_id": message_id,
            "channel_id": message.channel_id,
            "thread_ts": message.thread_ts,
            "text": args.text,
        }

    @staticmethod
    def _button_payload(button: Union[ButtonSpec, str]) -> dict:
        if isinstance(button, str):
            button = ButtonSpec(text=button)
        value = button.value or button.text.lower().replace(" ", "_")
        return {
            "text": button.text,
            "value": value,
            "style": button.style,
            "action_id": f"button_{value}_{uuid.uuid4().hex[:8]}",
        }
