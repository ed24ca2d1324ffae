"""Unit tests for council/healthcheck.py. No real API calls."""

import asyncio
from unittest.mock import AsyncMock

from council.healthcheck import run_health_checks
from council.providers.base import ProviderError

from tests.conftest import MockExecutor


async def test_all_executors_pass():
    executors = {
        "claude": MockExecutor("claude", "OK"),
        "gemini": MockExecutor("gemini", "OK"),
    }

    results = await run_health_checks(executors)

    assert all(r.ok for r in results.values())
    assert results["claude"].error == ""
    assert results["gemini"].model == "mock-model"


async def test_one_executor_fails():
    """An executor that raises returns ok=False with the error message."""
    executors = {
        "claude": MockExecutor("claude", "OK"),
        "grok": MockExecutor("grok"),
    }
    executors["grok"].execute = AsyncMock(side_effect=ProviderError("grok", "403 Forbidden"))

    results = await run_health_checks(executors)

    assert results["claude"].ok is True
    assert results["grok"].ok is False
    assert "403" in results["grok"].error


async def test_all_executors_fail():
    executors = {
        "openai": MockExecutor("openai"),
        "gemini": MockExecutor("gemini"),
    }
    for name, e in executors.items():
        e.execute = AsyncMock(side_effect=Exception(f"{name} down"))

    results = await run_health_checks(executors)

    for name in executors:
        assert results[name].ok is False
        assert name in results[name].error


async def test_empty_executors():
    assert await run_health_checks({}) == {}


async def test_blank_reply_is_a_failure():
    results = await run_health_checks({"claude": MockExecutor("claude", "   ")})
    assert results["claude"].ok is False
    assert results["claude"].error == "Empty reply"


async def test_ping_uses_plain_prompt():
    executor = MockExecutor("claude", "OK")
    await run_health_checks({"claude": executor})
    prompt = executor.execute.call_args.args[0]
    assert "OK" in prompt


async def test_timeout_counts_as_failure(monkeypatch):
    """An executor that hangs past the timeout is marked as failed."""
    executors = {"slow": MockExecutor("slow")}

    async def hang(*args, **kwargs):
        await asyncio.sleep(9999)

    executors["slow"].execute = AsyncMock(side_effect=hang)
    monkeypatch.setattr("council.healthcheck._TIMEOUT_SEC", 0.05)

    results = await run_health_checks(executors)

    assert results["slow"].ok is False
    assert "No reply" in results["slow"].error
