"""
Request Descriptor
==================

The unit of work handed to the dispatcher. Descriptors are frozen:
interceptors and the dispatcher derive new ones with ``evolve`` rather
than mutating in place, so a descriptor shared by the cache, the queue
and a retry lineage never changes under them.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from courier.core.types import CacheMode, Method

if TYPE_CHECKING:
    from courier.utils.cancellation import CancellationToken


@dataclass(frozen=True)
class RequestDescriptor:
    """Normalized request record with its per-request policy fields."""

    url: str
    method: Method = Method.GET
    headers: dict[str, str] = field(default_factory=dict)
    data: Any = None
    params: dict[str, Any] = field(default_factory=dict)
    base_url: str = ""
    timeout_s: float | None = None

    # Cache policy
    cache: CacheMode = CacheMode.DEFAULT
    cache_key: str | None = None
    cache_ttl_s: float | None = None

    # Retry policy
    retry: bool | int = False
    retry_delay_s: float | None = None
    retry_incremental: bool = False
    # Extra statuses worth retrying, e.g. (408, 429)
    retry_statuses: tuple[int, ...] = ()

    # Admission / batching
    priority: int = 5
    group_key: str | None = None
    ignore_queue: bool = False

    # Preload
    preload_key: str | None = None
    preload_ttl_s: float | None = None

    # Field-extraction rule for compound batch responses ("data.results")
    response_path: str | None = None

    cancel_token: CancellationToken | None = field(default=None, compare=False, repr=False)

    # Open extension map for transport- or interceptor-specific fields
    extensions: dict[str, Any] = field(default_factory=dict)

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16], compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.method, Method):
            object.__setattr__(self, "method", Method(str(self.method).upper()))
        if not isinstance(self.cache, CacheMode):
            object.__setattr__(self, "cache", _coerce_cache_mode(self.cache))

    def evolve(self, **changes: Any) -> RequestDescriptor:
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    @property
    def is_cacheable(self) -> bool:
        return self.method == Method.GET and self.cache != CacheMode.DISABLED

    def to_telemetry(self) -> dict[str, Any]:
        """Extract log-safe attributes."""
        return {
            "request_id": self.request_id,
            "method": self.method.value,
            "url": self.url,
            "priority": self.priority,
            "group_key": self.group_key,
        }


def _coerce_cache_mode(value: Any) -> CacheMode:
    # Accept the boolean shorthand: True = default caching, False = disabled.
    if value is True or value is None:
        return CacheMode.DEFAULT
    if value is False:
        return CacheMode.DISABLED
    return _CACHE_MODE_ALIASES.get(value) or CacheMode(value)


_CACHE_MODE_ALIASES = {
    "force-cache": CacheMode.FORCE,
    "no-cache": CacheMode.DISABLED,
    "no-store": CacheMode.DISABLED,
}
