"""OpenAI-compatible chat completions client for thread-loop."""

import json
import logging
import os
import re
from typing import TYPE_CHECKING, Optional

import httpx

from thread_loop.exceptions import LLMError
from thread_loop.model import LLMClient, NextAction, ToolCall
from thread_loop.prompt import DEFAULT_SYSTEM_PROMPT, Message, build_messages
from thread_loop.state import ThreadState
from thread_loop.tools import Tool, ToolRegistry

if TYPE_CHECKING:
    from thread_loop.config import LoopSettings

logger = logging.getLogger(__name__)

# Calls some models write into the message text instead of tool_calls.
_CONTENT_CALL_PATTERNS = [
    re.compile(r"!function\.(\w+)\s*(\{[\s\S]*?\}(?=\s*(?:!function|\n\n|$)))"),
    re.compile(r"\[(\w+)\]\s*(\{[\s\S]*?\}(?=\s*(?:\[|\n\n|$)))"),
    re.compile(r"##\s+(?:functions\.)?(\w+)(?:\s*\n|\s+)(\{[\s\S]*?\}(?=\s*(?:##|$)))"),
]


class OpenAIAdaptor(LLMClient):
    """OpenAI-compatible model client.

    Supports the OpenAI API and compatible endpoints (local models, proxies).

    Args:
        api_key: API key. Falls back to OPENAI_API_KEY environment variable.
        model: Model name (default: gpt-4.1-mini).
        base_url: Base URL for the API (default: https://api.openai.com/v1).
        system_prompt: Instructions placed before the thread context.
        temperature: Sampling temperature (default: 0.2).
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4.1-mini",
        base_url: Optional[str] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float = 0.2,
        timeout: float = 60.0,
    ):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key not provided. "
                "Pass api_key argument or set OPENAI_API_KEY environment variable."
            )

        self.model = model
        self.base_url = base_url or "https://api.openai.com/v1"
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: "LoopSettings", **kwargs) -> "OpenAIAdaptor":
        return cls(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            **kwargs,
        )

    async def next_action(
        self,
        state: ThreadState,
        tools: ToolRegistry,
        **kwargs,
    ) -> NextAction:
        """Ask the model for the next tool call on this thread.

        Raises:
            LLMError: If the API returns an error or a malformed response.
            httpx.HTTPError: If the request itself fails.
        """
        messages = self._convert_messages(build_messages(state, self.system_prompt))
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": kwargs.get("temperature", self.temperature),
        }
        if tools:
            payload["tools"] = [self._convert_tool(tool) for tool in tools]
            payload["tool_choice"] = kwargs.get("tool_choice", "auto")

        response = await self._post(payload, kwargs.get("timeout", self.timeout))

        # Retry once with a reduced context when the server chokes on the full one.
        if response.status_code == 500:
            logger.warning("Model API returned 500, retrying with reduced context")
            payload["messages"] = self._reduce_messages(messages)
            response = await self._post(payload, kwargs.get("timeout", self.timeout))

        if response.status_code != 200:
            try:
                error_data = response.json()
                error_msg = error_data.get("error", {}).get("message", "Unknown error")
            except ValueError:
                error_msg = "Unknown error"
            raise LLMError(f"OpenAI API error ({response.status_code}): {error_msg}")

        return self._parse_response(response.json())

    async def _post(self, payload: dict, timeout: float) -> httpx.Response:
        async with httpx.AsyncClient() as client:
            return await client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=timeout,
            )

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        return [{"role": msg.role, "content": msg.content} for msg in messages]

    def _reduce_messages(self, messages: list[dict]) -> list[dict]:
        """Keep the leading system prompt and the most recent user message."""
        reduced = messages[:1]
        for msg in reversed(messages[1:]):
            if msg["role"] == "user":
                reduced.append(msg)
                break
        return reduced

    def _convert_tool(self, tool: Tool) -> dict:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.schema(),
            },
        }

    def _parse_response(self, data: dict) -> NextAction:
        """Parse an API response into a NextAction.

        Native ``tool_calls`` win; otherwise the content is scanned for calls
        written inline. Arguments that aren't valid JSON are passed through
        as strings and rejected later by argument normalization.

        Raises:
            LLMError: If the response has no choices.
        """
        if not data.get("choices"):
            raise LLMError("OpenAI response missing 'choices' field")

        message = data["choices"][0].get("message") or {}
        content = message.get("content") or ""

        tool_calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            tool_calls.append(
                ToolCall(
                    tool=_clean_tool_name(function.get("name", "")),
                    parameters=_parse_arguments(function.get("arguments")),
                    id=raw.get("id"),
                )
            )

        if not tool_calls and content:
            tool_calls = self._parse_content_calls(content)

        return NextAction(
            tool_calls=tool_calls,
            reasoning=content or None,
            content=content,
        )

    def _parse_content_calls(self, content: str) -> list[ToolCall]:
        calls = []
        for pattern in _CONTENT_CALL_PATTERNS:
            for match in pattern.finditer(content):
                try:
                    arguments = json.loads(match.group(2))
                except ValueError:
                    logger.info("Ignoring unparseable inline call to %s", match.group(1))
                    continue
                calls.append(
                    ToolCall(
                        tool=_clean_tool_name(match.group(1)),
                        parameters=arguments,
                        id=f"content_{match.group(1)}_{len(calls)}",
                    )
                )
        if calls:
            logger.info("Recovered %d tool call(s) from message content", len(calls))
        return calls


def _clean_tool_name(name: str) -> str:
    return re.sub(r"^functions\.", "", name)


def _parse_arguments(arguments):
    if arguments is None:
        return {}
    if isinstance(arguments, dict):
        return arguments
    try:
        return json.loads(arguments)
    except ValueError:
        logger.warning("Model returned arguments that aren't valid JSON")
        return arguments
