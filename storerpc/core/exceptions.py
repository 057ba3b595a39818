import builtins


class StoreRPCError(Exception):
    pass


class RPCSystemError(StoreRPCError):
    """Local protocol or internal fault."""


class RPCTimeoutError(RPCSystemError, builtins.TimeoutError):
    pass


class RPCConnectionError(RPCSystemError, builtins.ConnectionError):
    pass


class RemoteFunctionError(StoreRPCError):
    """The remote handler raised; carries its message text verbatim."""


class StoreError(StoreRPCError):
    pass
