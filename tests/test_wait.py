from __future__ import annotations

import asyncio

import pytest

from buildfleet import ProvisioningError, TimeoutError, await_condition, wait_for_ready

pytestmark = pytest.mark.asyncio


async def test_await_condition_already_true():
    await await_condition(lambda: True, timeout=0.1)


async def test_await_condition_becomes_true():
    flag = {"value": False}

    async def flip() -> None:
        await asyncio.sleep(0.03)
        flag["value"] = True

    task = asyncio.create_task(flip())
    await await_condition(lambda: flag["value"], timeout=1.0, interval=0.01)
    await task


async def test_await_condition_times_out():
    with pytest.raises(TimeoutError, match="flag after 0.1s"):
        await await_condition(lambda: False, timeout=0.1, interval=0.01, description="flag")


async def test_wait_for_ready_skips_none():
    results = iter([None, "booting", "ready"])

    async def poll() -> str | None:
        return next(results)

    assert await wait_for_ready(poll, lambda s: s == "ready", interval=0.0) == "ready"


async def test_wait_for_ready_terminal_state():
    async def poll() -> str:
        return "dead"

    with pytest.raises(ProvisioningError, match="terminal state: dead"):
        await wait_for_ready(
            poll,
            lambda s: s == "ready",
            terminal_check=lambda s: s == "dead",
            interval=0.0,
            description="instance",
        )


async def test_wait_for_ready_timeout():
    async def poll() -> str:
        return "booting"

    with pytest.raises(TimeoutError, match="Timeout waiting for instance"):
        await wait_for_ready(
            poll, lambda s: s == "ready", timeout=0.03, interval=0.01, description="instance",
        )
