import json
from abc import ABC, abstractmethod
from typing import Any


class ISerializer(ABC):
    """Turns handler arguments and results into the opaque string payload."""

    @abstractmethod
    def dumps(self, value: Any) -> str:
        pass

    @abstractmethod
    def loads(self, payload: str) -> Any:
        pass


class JsonSerializer(ISerializer):
    def dumps(self, value: Any) -> str:
        return json.dumps(value)

    def loads(self, payload: str) -> Any:
        if payload is None:
            return None
        return json.loads(payload)
