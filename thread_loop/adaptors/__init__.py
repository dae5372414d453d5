"""Model clients for thread-loop.

This module provides implementations of LLMClient for various LLM providers.
"""

from thread_loop.adaptors.openai import OpenAIAdaptor

__all__ = ["OpenAIAdaptor"]

# The Anthropic client needs the optional anthropic SDK
try:
    from thread_loop.adaptors.anthropic import AnthropicAdaptor

    __all__.append("AnthropicAdaptor")
except ImportError:
    pass
