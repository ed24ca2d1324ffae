"""Executor health checks: ping every configured model before a dialogue starts."""

import asyncio
import logging
import time
from dataclasses import dataclass

from council.providers.base import AIExecutor

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


@dataclass
class HealthResult:
    name: str
    model: str
    ok: bool
    error: str = ""
    latency_sec: float = 0.0


async def _check_one(name: str, executor: AIExecutor) -> HealthResult:
    start = time.monotonic()
    try:
        completion = await asyncio.wait_for(executor.execute(_PING_PROMPT), timeout=_TIMEOUT_SEC)
    except TimeoutError:
        logger.debug("Health check timed out: %s", name)
        return HealthResult(name, executor.model_string(), False, f"No reply within {_TIMEOUT_SEC:g}s")
    except Exception as exc:
        logger.debug("Health check failed: %s: %s", name, exc)
        return HealthResult(name, executor.model_string(), False, str(exc))

    latency = time.monotonic() - start
    if not completion.content.strip():
        return HealthResult(name, executor.model_string(), False, "Empty reply", latency)
    return HealthResult(name, executor.model_string(), True, latency_sec=latency)


async def run_health_checks(executors: dict[str, AIExecutor]) -> dict[str, HealthResult]:
    """Ping all executors in parallel.

    Returns:
        Dict mapping provider name -> HealthResult.
    """
    results = await asyncio.gather(*(_check_one(n, e) for n, e in executors.items()))
    return {r.name: r for r in results}
