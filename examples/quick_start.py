"""Minimal thread-loop example with a hook. Requires OPENAI_API_KEY."""

import asyncio
import os

from pydantic import Field

from thread_loop import (
    ConversationLoop,
    FinishRequestTool,
    MessageContext,
    OpenAIAdaptor,
    PostMessageTool,
    ThreadStateStore,
    Tool,
    ToolInput,
)


class CityInput(ToolInput):
    city: str = Field(description="City name")


class GetPopulation(Tool):
    name = "get_population"
    description = "Returns the approximate population of a city"
    input_model = CityInput

    async def execute(self, args, state):
        populations = {"tokyo": "14M", "paris": "2.1M", "new york": "8.3M"}
        return populations.get(args.city.lower(), "unknown")


async def print_to_console(message):
    print(f"[{message.channel_id}/{message.thread_ts}] {message.text}")
    return None


loop = ConversationLoop(
    llm=OpenAIAdaptor(api_key=os.environ["OPENAI_API_KEY"], model="gpt-4.1-mini"),
    tools=[FinishRequestTool(), PostMessageTool(print_to_console), GetPopulation()],
)


@loop.hook("after_tool_call")
async def on_tool_call(event):
    print(f"[hook] {event.tool_name}({event.arguments}) -> {event.result}")


async def main():
    store = ThreadStateStore()
    state = store.get_or_create("T1")
    state.attach_context(
        MessageContext(
            user_id="U1",
            channel_id="console",
            thread_id="T1",
            text="What's the population of Tokyo and Paris?",
        )
    )
    outcome = await loop.run(state)
    print(f"Finished: {outcome.reason} after {outcome.iterations} iterations")


if __name__ == "__main__":
    asyncio.run(main())
