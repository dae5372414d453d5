"""Anthropic API client for thread-loop."""

import os
from typing import Optional

from anthropic import AsyncAnthropic

from thread_loop.model import LLMClient, NextAction, ToolCall
from thread_loop.prompt import DEFAULT_SYSTEM_PROMPT, Message, build_messages
from thread_loop.state import ThreadState
from thread_loop.tools import Tool, ToolRegistry


class AnthropicAdaptor(LLMClient):
    """Anthropic model client using the official SDK.

    Args:
        api_key: Anthropic API key. Falls back to ANTHROPIC_API_KEY environment variable.
        model: Model name (default: claude-sonnet-4-5-20250929).
        max_tokens: Maximum tokens in the response (default: 1024).
        system_prompt: Instructions placed before the thread context.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 1024,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Anthropic API key not provided. "
                "Pass api_key argument or set ANTHROPIC_API_KEY environment variable."
            )

        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.client = AsyncAnthropic(api_key=self.api_key)

    async def next_action(
        self,
        state: ThreadState,
        tools: ToolRegistry,
        **kwargs,
    ) -> NextAction:
        system, anthropic_messages = self._convert_messages(
            build_messages(state, self.system_prompt)
        )

        create_kwargs = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "system": system,
            "messages": anthropic_messages,
        }
        if tools:
            create_kwargs["tools"] = [self._convert_tool(tool) for tool in tools]

        response = await self.client.messages.create(**create_kwargs)
        return self._parse_response(response)

    def _convert_messages(self, messages: list[Message]) -> tuple[str, list[dict]]:
        """Split out the system prompt and produce alternating user/assistant turns.

        Later system notes are sent as user turns; adjacent turns with the
        same role are merged.
        """
        system = ""
        turns: list[dict] = []
        for index, msg in enumerate(messages):
            if msg.role == "system" and index == 0:
                system = msg.content
                continue
            role = "assistant" if msg.role == "assistant" else "user"
            if turns and turns[-1]["role"] == role:
                turns[-1]["content"] += "\n\n" + msg.content
            else:
                turns.append({"role": role, "content": msg.content})

        if not turns or turns[0]["role"] != "user":
            turns.insert(0, {"role": "user", "content": "(conversation continues)"})
        return system, turns

    def _convert_tool(self, tool: Tool) -> dict:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.schema(),
        }

    def _parse_response(self, response) -> NextAction:
        text = ""
        tool_calls = []
        for block in response.content:
            if block.type == "text" and not text:
                text = block.text
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(tool=block.name, parameters=block.input, id=block.id)
                )

        return NextAction(tool_calls=tool_calls, reasoning=text or None, content=text)
