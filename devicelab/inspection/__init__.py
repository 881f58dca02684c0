from .client import InspectionChannel, await_result, connect, terminate
from .types import (
    ConnectTimeoutError,
    InspectionConnectionError,
    InspectionError,
    ProcessExitError,
    ProtocolError,
    ResultTimeoutError,
)

__all__ = [
    "connect",
    "await_result",
    "terminate",
    "InspectionChannel",
    "InspectionError",
    "InspectionConnectionError",
    "ConnectTimeoutError",
    "ResultTimeoutError",
    "ProcessExitError",
    "ProtocolError",
]
