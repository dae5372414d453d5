"""Plain-text rendering of structured message content.

Posted messages may use block directives (``#header: Title``) and Slack-style
markdown. The loop stores what was sent in the turn history as plain text so
the model can read back what it already said.
"""

import re
from typing import Any, Mapping

_DIRECTIVE = re.compile(r"^\s*#(\w+):\s*", re.MULTILINE)
_SUBSTITUTIONS = [
    (re.compile(r"\*\*?(.*?)\*\*?"), r"\1"),  # bold
    (re.compile(r"_{1,2}(.*?)_{1,2}"), r"\1"),  # italic
    (re.compile(r"~{1,2}(.*?)~{1,2}"), r"\1"),  # strikethrough
    (re.compile(r"`{1,3}([\s\S]*?)`{1,3}"), r"\1"),  # code
    (re.compile(r"\[(.*?)\]\(.*?\)"), r"\1"),  # markdown links
    (re.compile(r"<(https?://[^|>]+)\|([^>]+)>"), r"\2"),  # slack links
    (re.compile(r"^#+\s*(.*?)$", re.MULTILINE), r"\1"),  # headers
    (re.compile(r"^\s*>\s*(.*?)$", re.MULTILINE), r"\1"),  # quotes
    (re.compile(r"^\s*[-*+•]\s+(.*?)$", re.MULTILINE), r"\1"),  # bullets
    (re.compile(r"^\s*\d+\.\s+(.*?)$", re.MULTILINE), r"\1"),  # numbered
]
_WHITESPACE = re.compile(r"\s+")


def strip_markup(text: str) -> str:
    text = _DIRECTIVE.sub("", text)
    for pattern, replacement in _SUBSTITUTIONS:
        text = pattern.sub(replacement, text)
    return _WHITESPACE.sub(" ", text).strip()


def extract_readable_text(content: Any) -> str:
    """Best-effort plain text for a string, a message payload or a block list."""
    if content is None:
        return ""
    if isinstance(content, str):
        return strip_markup(content)
    if isinstance(content, Mapping):
        parts = []
        for key in ("title", "text", "value"):
            value = content.get(key)
            if isinstance(value, str) and value:
                parts.append(strip_markup(value))
        for key in ("blocks", "fields"):
            value = content.get(key)
            if value:
                parts.append(extract_readable_text(value))
        return " ".join(part for part in parts if part)
    if isinstance(content, (list, tuple)):
        parts = [extract_readable_text(item) for item in content]
        return " ".join(part for part in parts if part)
    return strip_markup(str(content))
