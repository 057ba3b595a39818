import asyncio
import random
from collections import Counter
from storerpc.client.rpc import RPCEndpoint
from storerpc.server.registry import StoreRegistry
from storerpc.server.tcp import TcpFrontend


async def start_claimant(name: str, url: str, executions: Counter) -> RPCEndpoint:
    endpoint = RPCEndpoint("simulation")
    endpoint.set_name(name)
    await endpoint.connect(url)

    async def work(args):
        executions[args["id"]] += 1
        await asyncio.sleep(args["processing_time"])
        print(f"[{name}] Finished: {args['id']}")
        return {"id": args["id"], "by": name}

    endpoint.subscribe("work", work)
    print(f"[{name}] Started.")
    return endpoint


async def main():
    # Start store server in background
    registry = StoreRegistry()
    server = TcpFrontend(registry.get_store(), host="127.0.0.1", port=0)
    port = await server.listen()
    url = f"127.0.0.1:{port}"

    msg_count = 20
    executions: Counter = Counter()

    claimants = [
        await start_claimant("C1", url, executions),
        await start_claimant("C2", url, executions),
    ]

    caller = RPCEndpoint("simulation")
    caller.set_name("Caller")
    await caller.connect(url)

    print(f"[Caller] Sending {msg_count} calls...")
    results = await asyncio.gather(
        *(
            caller.call("work", {"id": i, "processing_time": random.uniform(0, 0.2)})
            for i in range(msg_count)
        )
    )

    by_claimant = Counter(result["by"] for result in results)
    print(f"Total executed: {sum(executions.values())}")
    print(f"Unique executed: {len(executions)}")
    print(f"Per claimant: {dict(by_claimant)}")

    assert sum(executions.values()) == msg_count
    assert all(count == 1 for count in executions.values())

    await caller.close()
    for claimant in claimants:
        await claimant.close()
    await server.stop()

    remaining = await registry.get_store().find({})
    print(f"Records left in store: {len(remaining)}")


if __name__ == "__main__":
    asyncio.run(main())
