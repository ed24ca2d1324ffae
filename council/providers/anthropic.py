"""Claude executor (anthropic SDK, native async)."""

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from council.providers.base import SDKExecutor


class AnthropicExecutor(SDKExecutor):
    """Messages API; the context string becomes the system prompt."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=self._api_key)

    async def _complete(self, prompt: str, context: str) -> tuple[str, int | None]:
        request: dict = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if context:
            request["system"] = context
        response = await self._client.messages.create(**request)

        text = "\n".join(b.text for b in (response.content or []) if b.type == "text")
        usage = response.usage
        return text, (usage.input_tokens + usage.output_tokens) if usage else None
