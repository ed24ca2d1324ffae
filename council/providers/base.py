"""Executor interface plus the shared timing/timeout wrapper used by the SDK-backed executors."""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod

from config.config_loader import ModelConfig
from council.models import Completion

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider call fails. ``timed_out`` marks a call that ran out of time."""

    def __init__(self, provider_name: str, message: str, timed_out: bool = False) -> None:
        self.provider_name = provider_name
        self.timed_out = timed_out
        super().__init__(f"[{provider_name}] {message}")


class AIExecutor(ABC):
    """Anything that turns a prompt (plus optional system context) into a Completion."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    def timeout_sec(self) -> float | None:
        """Default per-call timeout in seconds, or None when the executor sets none."""
        return None

    @abstractmethod
    async def execute(self, prompt: str, context: str = "", timeout_sec: float | None = None) -> Completion:
        """Run a single completion.

        Args:
            prompt: The user-turn prompt text.
            context: System-level instructions (persona, language rules). May be empty.
            timeout_sec: Overrides the default timeout for this call only.

        Returns:
            Completion with content and call metadata.

        Raises:
            ProviderError: On API failure, timeout, or invalid response.
        """
        ...


class SDKExecutor(AIExecutor):
    """Base for executors backed by a vendor SDK configured from a ModelConfig.

    Subclasses implement ``_complete``; this class owns the API key lookup,
    the ``asyncio.wait_for`` timeout and the translation of SDK failures into
    ProviderError.
    """

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        self._api_key = os.environ.get(config.api_key_env, "").strip()
        if not self._api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def timeout_sec(self) -> float | None:
        return self._config.timeout_sec

    @abstractmethod
    async def _complete(self, prompt: str, context: str) -> tuple[str, int | None]:
        """Return (text, token_count) for one call. May raise any SDK exception."""
        ...

    async def execute(self, prompt: str, context: str = "", timeout_sec: float | None = None) -> Completion:
        timeout = timeout_sec or self._config.timeout_sec
        start = time.monotonic()
        try:
            text, token_count = await asyncio.wait_for(self._complete(prompt, context), timeout=timeout)
        except TimeoutError as exc:
            raise ProviderError(self.name(), f"Request timed out after {timeout:g}s", timed_out=True) from exc
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(self.name(), f"API call failed: {exc}") from exc

        latency = time.monotonic() - start
        if not text:
            raise ProviderError(self.name(), "Empty response content")

        logger.debug("%s call: %.2fs, %s tokens", self.name(), latency, token_count)
        return Completion(
            content=text,
            provider=self.name(),
            model=self._config.model,
            latency_sec=latency,
            token_count=token_count,
        )
