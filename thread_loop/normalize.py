"""Argument repair for model-proposed tool calls.

Models don't always return arguments in the shape a tool declares. Three
shapes are repaired, in this order:

1. A whole call envelope ``{"tool": name, "parameters": {...}}`` passed as the
   arguments of that same tool is unwrapped to its ``parameters``.
2. ``reasoning`` present both at the top level and inside a nested
   ``parameters`` object keeps only the top-level value.
3. ``reasoning`` present only inside ``parameters`` is hoisted to the top.

Only these repairs are made. Anything that still isn't a JSON object raises
``MalformedArgumentsError``.
"""

import json
import logging
from typing import Any, Mapping

from thread_loop.exceptions import MalformedArgumentsError

logger = logging.getLogger(__name__)


def normalize_arguments(tool_name: str, raw_args: Any) -> dict:
    """Return a repaired copy of ``raw_args``; the input is never mutated."""
    args = _coerce_mapping(tool_name, raw_args)

    nested = args.get("parameters")
    if args.get("tool") == tool_name and isinstance(nested, Mapping):
        logger.info("Unwrapping nested call envelope for %s", tool_name)
        reasoning = args.get("reasoning") or nested.get("reasoning")
        args = dict(nested)
        if reasoning is not None:
            args["reasoning"] = reasoning
        elif "reasoning" in args:
            del args["reasoning"]

    nested = args.get("parameters")
    if isinstance(nested, Mapping) and "reasoning" in nested:
        nested = dict(nested)
        nested_reasoning = nested.pop("reasoning")
        if args.get("reasoning"):
            logger.info("Dropping duplicate nested reasoning for %s", tool_name)
        else:
            logger.info("Hoisting nested reasoning for %s", tool_name)
            args["reasoning"] = nested_reasoning
        args["parameters"] = nested

    return args


def _coerce_mapping(tool_name: str, raw_args: Any) -> dict:
    if raw_args is None:
        return {}
    if isinstance(raw_args, (str, bytes)):
        try:
            raw_args = json.loads(raw_args)
        except ValueError as e:
            raise MalformedArgumentsError(
                f"Arguments for '{tool_name}' are not valid JSON: {e}"
            ) from e
    if not isinstance(raw_args, Mapping):
        raise MalformedArgumentsError(
            f"Arguments for '{tool_name}' must be an object, "
            f"got {type(raw_args).__name__}"
        )
    return dict(raw_args)


def canonical_json(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def fingerprint(tool_name: str, args: Mapping) -> str:
    """Ledger key for a call: tool name plus canonical arguments."""
    return f"{tool_name}-{canonical_json(args)}"
