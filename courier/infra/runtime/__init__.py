"""
Orchestration Layer — Request Lifecycle Management
=====================================================

Provides:
  - Interceptor chain with tombstoned handler slots
  - Priority admission control with offline buffering
  - Batch coalescing into compound calls
  - Retry policy and backoff
  - The dispatcher that composes them around a transport

Depends on: telemetry, cache
Depended on by: client
"""

from courier.infra.runtime.backends import HttpxTransport, Transport
from courier.infra.runtime.batcher import BatchCoalescer, BatchConfig
from courier.infra.runtime.dispatcher import RequestDispatcher
from courier.infra.runtime.interceptor import InterceptorHandler, InterceptorManager, Interceptors
from courier.infra.runtime.network import ManualNetworkStatus, NetworkStatusProvider
from courier.infra.runtime.queue import AdmissionController, QueueConfig, QueueTask
from courier.infra.runtime.retry import RetryContext, RetryController, RetryPolicy

__all__ = [
    "AdmissionController",
    "BatchCoalescer",
    "BatchConfig",
    "HttpxTransport",
    "InterceptorHandler",
    "InterceptorManager",
    "Interceptors",
    "ManualNetworkStatus",
    "NetworkStatusProvider",
    "QueueConfig",
    "QueueTask",
    "RequestDispatcher",
    "RetryContext",
    "RetryController",
    "RetryPolicy",
    "Transport",
]
