import asyncio

import pytest

from storerpc.client.subscription import SubscriptionRegistry
from storerpc.core.exceptions import RPCSystemError, RPCTimeoutError


@pytest.mark.asyncio
async def test_invoke_async_and_plain_handlers() -> None:
    registry = SubscriptionRegistry()

    async def double(args):
        return args * 2

    async_sub = registry.add("double", 1.0, double)
    plain_sub = registry.add("upper", 1.0, lambda args: args.upper())

    assert await async_sub.invoke(21) == 42
    assert await plain_sub.invoke("abc") == "ABC"


@pytest.mark.asyncio
async def test_handler_error_propagates() -> None:
    registry = SubscriptionRegistry()

    async def boom(_args):
        raise ValueError("bad input")

    subscription = registry.add("boom", 1.0, boom)

    with pytest.raises(ValueError, match="bad input"):
        await subscription.invoke(None)


@pytest.mark.asyncio
async def test_timeout_wins_and_handler_keeps_running() -> None:
    registry = SubscriptionRegistry()
    release = asyncio.Event()
    finished = asyncio.Event()

    async def slow(_args):
        await release.wait()
        finished.set()
        return "late"

    subscription = registry.add("slow", 0.05, slow)

    with pytest.raises(RPCTimeoutError, match="Callee timeout."):
        await subscription.invoke(None)

    assert not finished.is_set()
    release.set()
    await asyncio.wait_for(finished.wait(), 1.0)


@pytest.mark.asyncio
async def test_duplicate_subscription_is_an_error() -> None:
    registry = SubscriptionRegistry()
    registry.add("m", 1.0, lambda args: args)

    with pytest.raises(RPCSystemError, match="Already subscribed"):
        registry.add("m", 1.0, lambda args: args)


@pytest.mark.asyncio
async def test_close_only_withdraws_itself() -> None:
    registry = SubscriptionRegistry()
    first = registry.add("m", 1.0, lambda args: 1)
    first.close()
    first.close()
    assert "m" not in registry

    second = registry.add("m", 1.0, lambda args: 2)
    first.close()

    assert registry.get("m") is second
    assert second.active
    assert not first.active


@pytest.mark.asyncio
async def test_cancelled_invoke_leaves_handler_running() -> None:
    registry = SubscriptionRegistry()
    release = asyncio.Event()
    finished = asyncio.Event()

    async def slow(_args):
        await release.wait()
        finished.set()

    subscription = registry.add("slow", 5.0, slow)
    invocation = asyncio.ensure_future(subscription.invoke(None))
    await asyncio.sleep(0.01)

    invocation.cancel()
    with pytest.raises(asyncio.CancelledError):
        await invocation

    release.set()
    await asyncio.wait_for(finished.wait(), 1.0)
