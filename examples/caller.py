import asyncio
from storerpc.client.rpc import RPCEndpoint
from storerpc.core.exceptions import RemoteFunctionError, RPCTimeoutError


async def main():
    endpoint = RPCEndpoint("MyChannel")
    endpoint.set_name("Client")
    endpoint.set_caller_timeout(10.0)
    await endpoint.connect("localhost:9100")

    try:
        for i in range(5):
            try:
                result = await endpoint.call("helloWorld", {"text": f"Hello {i}"})
                print(f"Call {i} returned: {result}")
            except RemoteFunctionError as e:
                print(f"Call {i} failed remotely: {e}")
            except RPCTimeoutError:
                print(f"Call {i} timed out (is examples/callee.py running?)")
    finally:
        await endpoint.close()


if __name__ == "__main__":
    asyncio.run(main())
