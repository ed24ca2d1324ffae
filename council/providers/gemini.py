"""Gemini executor (google-genai, async client)."""

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from council.providers.base import SDKExecutor


class GeminiExecutor(SDKExecutor):
    """Context is passed as ``system_instruction``."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = genai.Client(api_key=self._api_key)

    async def _complete(self, prompt: str, context: str) -> tuple[str, int | None]:
        response = await self._client.aio.models.generate_content(
            model=self._config.model,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                max_output_tokens=self._config.max_tokens,
                system_instruction=context or None,
            ),
        )
        usage = response.usage_metadata
        return response.text or "", usage.total_token_count if usage else None
