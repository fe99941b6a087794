"""
Request fingerprints and small lookup helpers.

``generate_cache_key`` is the cache address of a request: two
descriptors that would hit the server with the same method, URL, query
and body produce the same key regardless of dict ordering.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from courier.models.request import RequestDescriptor

_ABSOLUTE_URL = re.compile(r"^([a-z][a-z\d+\-.]*:)?//", re.IGNORECASE)


def sort_keys(value: Any) -> Any:
    """Recursively sort mapping keys so serialization is deterministic."""
    if isinstance(value, dict):
        return {str(k): sort_keys(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [sort_keys(v) for v in value]
    return value


def _canonical(value: Any) -> str:
    try:
        return json.dumps(sort_keys(value), separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return str(value)


def generate_cache_key(request: RequestDescriptor) -> str:
    """Fingerprint of (method, url, sorted query, sorted body).

    An explicit ``cache_key`` on the descriptor wins.
    """
    if request.cache_key:
        return request.cache_key

    parts = [request.method.value, build_url(request.url, request.base_url)]
    if request.params:
        parts.append("params:" + _canonical(request.params))
    if request.data is not None:
        parts.append("data:" + _canonical(request.data))
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


def is_absolute_url(url: str) -> bool:
    return bool(_ABSOLUTE_URL.match(url))


def build_url(url: str, base_url: str | None = None) -> str:
    """Join ``url`` onto ``base_url`` unless it is already absolute."""
    if not base_url or is_absolute_url(url):
        return url
    if not url:
        return base_url
    return base_url.rstrip("/") + "/" + url.lstrip("/")


def get_value_by_path(obj: Any, path: str | None, default: Any = None) -> Any:
    """Resolve a dotted path ("data.results.0") against nested dicts/lists."""
    if obj is None or not path:
        return default
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current
