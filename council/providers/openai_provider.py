"""OpenAI-compatible chat executors (OpenAI itself and xAI Grok)."""

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from council.providers.base import ProviderError, SDKExecutor


class OpenAIExecutor(SDKExecutor):
    """Chat Completions; context is sent as a leading system message."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = AsyncOpenAI(api_key=self._api_key, base_url=config.base_url)

    async def _complete(self, prompt: str, context: str) -> tuple[str, int | None]:
        messages = [{"role": "system", "content": context}] if context else []
        messages.append({"role": "user", "content": prompt})
        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=messages,
            max_tokens=self._config.max_tokens,
        )
        text = response.choices[0].message.content if response.choices else None
        return text or "", response.usage.total_tokens if response.usage else None


class XAIExecutor(OpenAIExecutor):
    """xAI Grok through its OpenAI-compatible endpoint."""

    def __init__(self, config: ModelConfig) -> None:
        if not config.base_url:
            raise ProviderError(config.name, "base_url is required for xAI provider")
        super().__init__(config)
