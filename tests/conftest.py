import asyncio

import pytest_asyncio

from storerpc.client.rpc import RPCEndpoint
from storerpc.core.config import RPCConfig
from storerpc.server.storage.in_memory import InMemoryMessageStore

CHANNEL = "MyChannel"


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Polls an async predicate until it returns truthy or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = await predicate()
        if value:
            return value
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest_asyncio.fixture
async def store():
    store = InMemoryMessageStore()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def make_endpoint(store):
    endpoints = []

    async def _make(
        name: str,
        caller_timeout: float = 5.0,
        callee_timeout: float = 2.0,
        channel: str = CHANNEL,
    ) -> RPCEndpoint:
        endpoint = RPCEndpoint(
            config=RPCConfig(
                channel=channel,
                name=name,
                caller_timeout=caller_timeout,
                callee_timeout=callee_timeout,
            )
        )
        await endpoint.attach(store)
        endpoints.append(endpoint)
        return endpoint

    yield _make

    for endpoint in endpoints:
        await endpoint.close()


@pytest_asyncio.fixture
async def server(make_endpoint):
    return await make_endpoint("Server")


@pytest_asyncio.fixture
async def client(make_endpoint):
    return await make_endpoint("Client")
