"""
Remote Call Gateway: bounded concurrency and retry for every outbound call.
"""
from perpconsole.gateway.limiter import FifoLimiter, InFlightSlot
from perpconsole.gateway.remote_gateway import RemoteCallGateway
from perpconsole.gateway.retry import RetryPolicy, is_transient_error, is_transient_message

__all__ = [
    "FifoLimiter",
    "InFlightSlot",
    "RemoteCallGateway",
    "RetryPolicy",
    "is_transient_error",
    "is_transient_message",
]
