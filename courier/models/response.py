"""Response record produced once per successful transport call."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from typing import Any

from courier.models.request import RequestDescriptor


@dataclass(frozen=True)
class Response:
    """A completed request.

    Cache hits hand out copies with ``from_cache=True``; the stored entry
    itself is never modified.
    """

    status: int
    data: Any = None
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    request: RequestDescriptor | None = None
    from_cache: bool = False
    timestamp: float = field(default_factory=time.time)
    retry_count: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def evolve(self, **changes: Any) -> Response:
        return dataclasses.replace(self, **changes)
