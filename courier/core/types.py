"""
Canonical Type Definitions
===========================

Single source of truth for shared enums used across the codebase.
All modules should import shared enums from here.

This module defines:
- Method: HTTP verbs accepted by the dispatcher
- CacheMode: per-request cache policy
- ErrorKind: classification of request failures
- TaskStatus: lifecycle of an admission queue task

Dataclasses (descriptors, responses) remain in ``courier.models`` but use
these shared enums.
"""

from enum import StrEnum

__all__ = [
    "CacheMode",
    "ErrorKind",
    "Method",
    "TaskStatus",
]

class Method(StrEnum):
    """HTTP methods understood by the transport layer."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    TRACE = "TRACE"
    CONNECT = "CONNECT"

class CacheMode(StrEnum):
    """Cache policy for a single request.

    Only GET requests are ever cached; the mode decides what happens
    on a hit or a miss.
    """

    DEFAULT = "default"  # Serve cached value, revalidate in background
    FORCE = "force"  # Serve cached value, never revalidate
    ONLY_IF_CACHED = "only-if-cached"  # Fail on miss instead of sending
    DISABLED = "disabled"

class ErrorKind(StrEnum):
    """Failure classification carried on every RequestError.

    Retry decisions are made on the kind, never on the exception type.
    """

    TIMEOUT = "timeout"
    NETWORK = "network"
    CANCEL = "cancel"
    SERVER = "server"  # status >= 500
    CLIENT = "client"  # 4xx or malformed request
    OFFLINE = "offline"  # rejected at admission, offline buffering disabled
    UNKNOWN = "unknown"

class TaskStatus(StrEnum):
    """Admission queue task lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
