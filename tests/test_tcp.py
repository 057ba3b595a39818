import asyncio

import pytest
import pytest_asyncio

from conftest import eventually
from storerpc.client.rpc import RPCEndpoint
from storerpc.client.transport import TcpMessageStore
from storerpc.core.config import RPCConfig
from storerpc.core.exceptions import RemoteFunctionError, StoreError
from storerpc.core.models import Message, OperationType, Status, utc_now
from storerpc.server.storage.in_memory import InMemoryMessageStore
from storerpc.server.tcp import TcpFrontend


@pytest_asyncio.fixture
async def frontend():
    backing = InMemoryMessageStore()
    server = TcpFrontend(backing, host="127.0.0.1", port=0)
    await server.listen()
    yield server
    await server.stop()
    await backing.close()


@pytest_asyncio.fixture
async def remote(frontend):
    store = TcpMessageStore("127.0.0.1", frontend.port, timeout=5.0)
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_remote_store_operations(remote) -> None:
    inserted = await remote.insert_one(Message(id="m1", channel="c", method="m"))
    assert inserted.acknowledged and inserted.inserted_id == "m1"

    locked = await remote.find_one_and_update(
        {"id": "m1", "status": Status.REQUESTED.value},
        {"status": Status.ACKNOWLEDGED_AND_LOCKED.value, "acknowledge_time": utc_now()},
    )
    assert locked.status == Status.ACKNOWLEDGED_AND_LOCKED
    assert locked.acknowledge_time is not None

    assert (
        await remote.find_one_and_update(
            {"id": "m1", "status": Status.REQUESTED.value},
            {"status": Status.ACKNOWLEDGED_AND_LOCKED.value},
        )
        is None
    )

    updated = await remote.update_one({"id": "m1"}, {"result": "1"})
    assert (updated.matched_count, updated.modified_count) == (1, 1)
    assert [message.id for message in await remote.find({"channel": "c"})] == ["m1"]

    deleted = await remote.delete_one({"id": "m1"})
    assert deleted.deleted_count == 1
    assert await remote.find_one({"id": "m1"}) is None


@pytest.mark.asyncio
async def test_server_errors_raise_store_error(remote) -> None:
    await remote.insert_one(Message(id="m1", channel="c", method="m"))

    with pytest.raises(StoreError, match="Duplicate"):
        await remote.insert_one(Message(id="m1", channel="c", method="m"))


@pytest.mark.asyncio
async def test_remote_watch_streams_changes(remote) -> None:
    stream = await remote.watch("c")
    try:
        await remote.insert_one(Message(id="m1", channel="c", method="m"))
        await remote.update_one({"id": "m1"}, {"status": Status.COMPLETED_SUCCESS.value})

        insert = await asyncio.wait_for(stream.next(), 2.0)
        update = await asyncio.wait_for(stream.next(), 2.0)
    finally:
        await stream.close()

    assert insert.operation_type == OperationType.INSERT
    assert insert.full_document.method == "m"
    assert update.operation_type == OperationType.UPDATE
    assert update.updated_fields == {"status": "CompletedSuccess"}


@pytest.mark.asyncio
async def test_unreachable_store_raises_store_error(frontend) -> None:
    port = frontend.port
    await frontend.stop()
    store = TcpMessageStore("127.0.0.1", port, timeout=1.0)

    with pytest.raises(StoreError):
        await store.find({})


@pytest.mark.asyncio
async def test_endpoints_over_tcp(frontend) -> None:
    url = f"127.0.0.1:{frontend.port}"
    server = RPCEndpoint(config=RPCConfig(channel="tcp", name="Server"))
    client = RPCEndpoint(config=RPCConfig(channel="tcp", name="Client"))
    await server.connect(url)
    await client.connect(url)
    try:
        server.subscribe("echo", lambda args: args)

        async def failing(args):
            raise ValueError("remote failure")

        server.subscribe("fail", failing)

        assert await client.call("echo", {"nested": [1, None, "x"]}) == {
            "nested": [1, None, "x"]
        }
        with pytest.raises(RemoteFunctionError, match="remote failure"):
            await client.call("fail")

        async def store_is_empty():
            return await frontend.store.find({}) == []

        await eventually(store_is_empty)
    finally:
        await client.close()
        await server.close()
