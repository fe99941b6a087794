"""Shared helpers: request fingerprints, URL joining, cancellation."""

from courier.utils.cancellation import CancellationToken, run_cancellable
from courier.utils.keys import build_url, generate_cache_key, get_value_by_path

__all__ = [
    "CancellationToken",
    "build_url",
    "generate_cache_key",
    "get_value_by_path",
    "run_cancellable",
]
