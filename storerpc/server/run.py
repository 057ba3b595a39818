import asyncio
import logging
import argparse
import uvicorn
from storerpc.core.config import DEFAULT_CALLER_TIMEOUT
from storerpc.server.api import create_app
from storerpc.server.registry import DEFAULT_RETENTION, StoreRegistry
from storerpc.server.tcp import TcpFrontend


async def main():
    parser = argparse.ArgumentParser(description="StoreRPC Message Store Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=9100, help="TCP port to bind to")
    parser.add_argument(
        "--http-port",
        type=int,
        default=None,
        help="Serve the inspection HTTP API on this port",
    )
    parser.add_argument(
        "--retention",
        type=float,
        default=DEFAULT_RETENTION,
        help="Seconds an idle message is kept before the reaper deletes it; "
        "must exceed the longest caller timeout of any client",
    )
    parser.add_argument(
        "--caller-timeout",
        type=float,
        default=DEFAULT_CALLER_TIMEOUT,
        help="Longest caller timeout used by clients, checked against --retention",
    )
    parser.add_argument(
        "--reaper-interval",
        type=float,
        default=60.0,
        help="Reaper interval in seconds",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    registry = StoreRegistry(
        retention=args.retention, caller_timeout=args.caller_timeout
    )
    registry.start_reaper(interval=args.reaper_interval)

    server = TcpFrontend(registry.get_store(), host=args.host, port=args.port)
    services = [server.start()]

    if args.http_port is not None:
        config = uvicorn.Config(
            create_app(registry),
            host=args.host,
            port=args.http_port,
            log_level=args.log_level.lower(),
        )
        services.append(uvicorn.Server(config).serve())

    print(f"Starting StoreRPC Server on {args.host}:{args.port}...")
    try:
        await asyncio.gather(*services)
    except asyncio.CancelledError:
        await server.stop()
    finally:
        await registry.stop_reaper()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
