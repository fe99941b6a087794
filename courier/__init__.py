"""
Courier — Client-Side Request Orchestration
=============================================

Caching, admission control, offline buffering, retry, preloading and
batch coalescing above a single "send one request" transport.

Usage:
    from courier import Client

    async with Client(base_url="https://api.example.com") as client:
        response = await client.get("/users")
"""

from courier.client import Client
from courier.core.config import Settings, get_settings
from courier.core.exceptions import (
    BatchMismatchError,
    ClientError,
    ConfigurationError,
    CourierException,
    NetworkError,
    NotCachedError,
    OfflineError,
    RequestCancelledError,
    RequestError,
    RequestTimeoutError,
    ServerError,
)
from courier.core.normalize import normalize_request
from courier.core.types import CacheMode, ErrorKind, Method, TaskStatus
from courier.infra.runtime import (
    HttpxTransport,
    ManualNetworkStatus,
    NetworkStatusProvider,
    RequestDispatcher,
    Transport,
)
from courier.models import RequestDescriptor, Response
from courier.utils import CancellationToken

__version__ = "1.0.0"

__all__ = [
    "BatchMismatchError",
    "CacheMode",
    "CancellationToken",
    "Client",
    "ClientError",
    "ConfigurationError",
    "CourierException",
    "ErrorKind",
    "HttpxTransport",
    "ManualNetworkStatus",
    "Method",
    "NetworkError",
    "NetworkStatusProvider",
    "NotCachedError",
    "OfflineError",
    "RequestCancelledError",
    "RequestDescriptor",
    "RequestDispatcher",
    "RequestError",
    "RequestTimeoutError",
    "Response",
    "ServerError",
    "Settings",
    "TaskStatus",
    "Transport",
    "get_settings",
    "normalize_request",
]
