import pytest
from pydantic import ValidationError

from storerpc.client.rpc import RPCEndpoint
from storerpc.core.config import (
    DEFAULT_CALLEE_TIMEOUT,
    DEFAULT_CALLER_TIMEOUT,
    RPCConfig,
    parse_store_url,
)


def test_defaults_leave_room_for_callee_timeout() -> None:
    config = RPCConfig()

    assert config.caller_timeout == DEFAULT_CALLER_TIMEOUT == 660.0
    assert config.callee_timeout == DEFAULT_CALLEE_TIMEOUT == 600.0
    assert config.caller_timeout > config.callee_timeout


def test_from_env() -> None:
    config = RPCConfig.from_env(
        {
            "STORERPC_CHANNEL": "jobs",
            "STORERPC_NAME": "worker-1",
            "STORERPC_CALLER_TIMEOUT": "12.5",
            "STORERPC_CALLEE_TIMEOUT": "10",
            "STORERPC_STORE_URL": "db.internal:9200",
            "UNRELATED": "x",
        }
    )

    assert config.channel == "jobs"
    assert config.name == "worker-1"
    assert config.caller_timeout == 12.5
    assert config.callee_timeout == 10.0
    assert config.store_url == "db.internal:9200"


def test_non_positive_timeout_is_invalid() -> None:
    with pytest.raises(ValidationError):
        RPCConfig(caller_timeout=0)


@pytest.mark.parametrize(
    "url, expected",
    [("localhost:9100", ("localhost", 9100)), ("10.0.0.1:1", ("10.0.0.1", 1))],
)
def test_parse_store_url(url, expected) -> None:
    assert parse_store_url(url) == expected


@pytest.mark.parametrize("url", ["localhost", ":9100", "host:port"])
def test_parse_store_url_rejects_garbage(url) -> None:
    with pytest.raises(ValueError):
        parse_store_url(url)


def test_endpoint_timeout_setters() -> None:
    endpoint = RPCEndpoint("c")
    endpoint.set_caller_timeout(3.0)
    endpoint.set_callee_timeout(1.0)
    endpoint.set_name("worker")

    assert endpoint.config.caller_timeout == 3.0
    assert endpoint.config.callee_timeout == 1.0
    assert endpoint.name == "worker"
    assert endpoint.channel == "c"

    with pytest.raises(ValidationError):
        endpoint.set_callee_timeout(-1)
