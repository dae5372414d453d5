from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class MessageContext:
    """Platform-agnostic description of an inbound chat event.

    Built by a channel adapter and stored on the thread as
    ``metadata['context']``. The loop never looks at raw platform payloads.
    """

    user_id: str
    channel_id: str
    thread_id: str
    text: str = ""
    timestamp: Optional[str] = None
    thread_ts: Optional[str] = None
    is_threaded_conversation: bool = False
    is_direct_message: bool = False
    is_mention: bool = False
    is_button_click: bool = False
    message_type: str = "message"
    extra: dict[str, Any] = field(default_factory=dict)

    def conversation_info(self) -> str:
        return (
            f"User:{self.user_id}, Channel:{self.channel_id}, "
            f"Thread:{self.thread_ts or 'N/A'}"
        )
