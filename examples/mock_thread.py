#!/usr/bin/env python3
"""thread-loop with scripted model responses; no API key needed.

Shows a two-message conversation on one thread: the second request repeats
a lookup from the first, which the execution ledger answers without running
the tool again.

Run:
    python examples/mock_thread.py
"""

import asyncio
import sys

from thread_loop import (
    ConversationLoop,
    FinishRequestTool,
    LLMClient,
    MessageContext,
    NextAction,
    PostMessageTool,
    ThreadStateStore,
    Tool,
    ToolCall,
    ToolInput,
    configure_logging,
)


class WeatherInput(ToolInput):
    city: str


class WeatherTool(Tool):
    name = "get_weather"
    description = "Current weather for a city"
    input_model = WeatherInput

    def __init__(self):
        self.lookups = 0

    async def execute(self, args, state):
        self.lookups += 1
        return {"city": args.city, "conditions": "partly cloudy", "celsius": 28}


class ScriptedModel(LLMClient):
    """Replays canned tool calls, one per model turn."""

    def __init__(self, script):
        self.script = list(script)

    async def next_action(self, state, tools, **kwargs):
        if not self.script:
            return NextAction()
        tool, parameters = self.script.pop(0)
        return NextAction(tool_calls=[ToolCall(tool=tool, parameters=parameters)])


async def send_to_console(message):
    print(f"  bot> {message.text}")
    return f"msg-{message.thread_ts}-{len(message.text)}"


def turn(tool, **parameters):
    return tool, parameters


async def main() -> int:
    configure_logging("WARNING")
    weather = WeatherTool()
    model = ScriptedModel(
        [
            turn("get_weather", city="São Paulo"),
            turn("post_message", text="*São Paulo*: partly cloudy, 28°C"),
            turn("finish_request", summary="Reported the weather"),
            # second request on the same thread
            turn("get_weather", city="São Paulo"),
            turn("post_message", text="Still 28°C in São Paulo."),
        ]
    )
    loop = ConversationLoop(
        llm=model,
        tools=[FinishRequestTool(), PostMessageTool(send_to_console), weather],
    )
    store = ThreadStateStore()

    for text in ("Weather in São Paulo?", "And now?"):
        state = store.get_or_create("T1")
        state.attach_context(
            MessageContext(user_id="U1", channel_id="console", thread_id="T1", text=text)
        )
        print(f"  user> {text}")
        outcome = await loop.run(state)
        print(f"  [{outcome.reason}, {outcome.iterations} iterations]\n")

    print(f"Weather lookups performed: {weather.lookups}")
    print(f"Ledger entries: {len(store.get('T1').ledger)}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
