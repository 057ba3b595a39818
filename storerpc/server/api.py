from collections import Counter
from fastapi import FastAPI, HTTPException
from typing import Optional
from storerpc.core.models import Status
from .registry import StoreRegistry


def create_app(registry: StoreRegistry) -> FastAPI:
    app = FastAPI(title="StoreRPC Message Store")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/channels/{channel}/messages")
    async def list_messages(channel: str, status: Optional[Status] = None):
        filter = {"channel": channel}
        if status is not None:
            filter["status"] = status.value
        messages = await registry.get_store().find(filter)
        return {"messages": messages}

    @app.get("/messages/{message_id}")
    async def get_message(message_id: str):
        message = await registry.get_store().find_one({"id": message_id})
        if message is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return message

    @app.get("/stats")
    async def stats():
        messages = await registry.get_store().find({})
        counts = Counter(message.status.value for message in messages)
        return {
            "total": len(messages),
            "by_status": {status.value: counts.get(status.value, 0) for status in Status},
        }

    return app
