"""Text-generation channel used to write digests."""

from typing import Any, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from rssfeed_digest.config import PipelineConfig


class TextGenerationError(Exception):
    """Raised when the text-generation backend cannot produce a completion."""


class TextGenerator(Protocol):
    async def complete(self, system: str, prompt: str) -> Any:
        """Return the raw message content for a prompt."""
        ...


class AnthropicTextGenerator:
    """Completes prompts with Claude through LangChain."""

    def __init__(
        self,
        model: str,
        max_tokens: int = 2000,
        timeout: float = 60.0,
        chat_model: Any = None,
    ):
        self.model = model
        self._chat_model = chat_model or ChatAnthropic(
            model=model,
            temperature=0,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=1,
        )

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "AnthropicTextGenerator":
        return cls(
            model=config.model,
            max_tokens=config.max_tokens,
            timeout=config.llm_timeout,
        )

    async def complete(self, system: str, prompt: str) -> Any:
        """Send one system + user exchange and return the response content.

        The content is either a string or a list of content blocks,
        exactly as the chat model returned it.

        Raises:
            TextGenerationError: If the request fails or times out.
        """
        messages = [SystemMessage(content=system), HumanMessage(content=prompt)]
        try:
            response = await self._chat_model.ainvoke(messages)
        except Exception as e:
            raise TextGenerationError(f"{self.model} request failed: {e}") from e
        return response.content
