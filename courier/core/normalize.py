"""Request normalization.

Merges client-level defaults with per-call overrides into one flat
``RequestDescriptor``. Mapping-valued fields (headers, params,
extensions) are merged key by key; everything else is replaced.
Unknown keys land in ``extensions`` so interceptors and transports can
read them without widening the descriptor.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any

from courier.core.config import Settings
from courier.core.exceptions import ClientError
from courier.models.request import RequestDescriptor

_DESCRIPTOR_FIELDS = frozenset(f.name for f in dataclasses.fields(RequestDescriptor))
_MERGED_FIELDS = ("headers", "params", "extensions")


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` onto ``base``; neither is modified."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def defaults_from_settings(settings: Settings) -> dict[str, Any]:
    """Descriptor defaults implied by instance settings."""
    return {
        "base_url": settings.BASE_URL,
        "headers": dict(settings.DEFAULT_HEADERS),
        "timeout_s": settings.TIMEOUT_S,
        "priority": settings.DEFAULT_PRIORITY,
    }


def normalize_request(defaults: Mapping[str, Any] | None = None, /, **overrides: Any) -> RequestDescriptor:
    """
    Build a descriptor from ``defaults`` plus per-call ``overrides``.

    ``None`` overrides are ignored so callers can pass optional
    arguments through unchanged.

    Raises:
        ClientError: if no url is given
    """
    merged = dict(defaults or {})
    for key, value in overrides.items():
        if value is None:
            continue
        if key in _MERGED_FIELDS and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value

    url = merged.get("url")
    if not url:
        raise ClientError("Request url is required")

    known = {k: v for k, v in merged.items() if k in _DESCRIPTOR_FIELDS}
    extra = {k: v for k, v in merged.items() if k not in _DESCRIPTOR_FIELDS}
    if extra:
        known["extensions"] = deep_merge(known.get("extensions", {}), extra)
    return RequestDescriptor(**known)
