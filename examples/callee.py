import asyncio
import random
from storerpc.client.rpc import RPCEndpoint


async def hello_world(args):
    print(f"Received: {args}")
    # Simulate processing work
    await asyncio.sleep(random.uniform(0.1, 0.5))
    return "Success from server."


async def main():
    # Connect to local store server on port 9100
    endpoint = RPCEndpoint("MyChannel")
    endpoint.set_name("Server")
    await endpoint.connect("localhost:9100")

    endpoint.subscribe("helloWorld", hello_world)
    print("Serving helloWorld on MyChannel. Ctrl+C to stop.")

    try:
        await asyncio.Event().wait()
    finally:
        await endpoint.close()


if __name__ == "__main__":
    asyncio.run(main())
