import os
import logging
from typing import Mapping, Optional
from pydantic import BaseModel, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_CALLEE_TIMEOUT = 600.0
DEFAULT_CALLER_TIMEOUT = 660.0
DEFAULT_STORE_URL = "localhost:9100"

ENV_PREFIX = "STORERPC_"


class RPCConfig(BaseModel):
    """Settings for one RPC endpoint. Timeouts are in seconds.

    The caller timeout should stay above the callee timeout so that a
    callee-side timeout error reaches the caller before it gives up.
    """

    channel: str = "default"
    name: Optional[str] = None
    caller_timeout: float = DEFAULT_CALLER_TIMEOUT
    callee_timeout: float = DEFAULT_CALLEE_TIMEOUT
    store_url: str = DEFAULT_STORE_URL

    @field_validator("caller_timeout", "callee_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @model_validator(mode="after")
    def _check_timeout_order(self) -> "RPCConfig":
        if self.caller_timeout <= self.callee_timeout:
            logger.warning(
                f"caller_timeout ({self.caller_timeout}s) is not greater than "
                f"callee_timeout ({self.callee_timeout}s); callers may time out "
                "before a callee timeout is reported"
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RPCConfig":
        environ = os.environ if environ is None else environ
        values = {}
        for field in ("channel", "name", "caller_timeout", "callee_timeout", "store_url"):
            raw = environ.get(ENV_PREFIX + field.upper())
            if raw is not None:
                values[field] = raw
        return cls(**values)


def parse_store_url(url: str):
    """Splits a "host:port" store target."""
    host, _, port = url.rpartition(":")
    if not host or not port.isdigit():
        raise ValueError(f"Invalid store url {url!r}, expected host:port")
    return host, int(port)
