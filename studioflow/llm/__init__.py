"""LLM provider abstraction and the prompt builder built on it."""

from studioflow.llm.litellm import LiteLLMProvider
from studioflow.llm.prompting import LLMPromptBuilder
from studioflow.llm.provider import LLMProvider, LLMResponse

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "LLMPromptBuilder",
]
