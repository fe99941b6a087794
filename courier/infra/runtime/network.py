"""
Network Status — Injected Connectivity Signal
===============================================

The admission queue never probes the network itself. It reads
``is_connected`` and subscribes to transitions on a provider supplied by
the host environment, which keeps offline buffering testable without a
real network.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from courier.infra.telemetry import get_logger

logger = get_logger(__name__)

NetworkListener = Callable[[bool], None]

class NetworkStatusProvider(Protocol):
    """Connectivity source consumed by the admission controller."""

    @property
    def is_connected(self) -> bool: ...

    def subscribe(self, listener: NetworkListener) -> Callable[[], None]:
        """Register ``listener(is_connected)``; returns an unsubscribe callable."""
        ...

class ManualNetworkStatus:
    """
    Provider driven by explicit calls.

    Hosts wire their own connectivity events to ``set_connected``;
    tests flip it directly.
    """

    def __init__(self, connected: bool = True) -> None:
        self._connected = connected
        self._listeners: list[NetworkListener] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: NetworkListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_connected(self, connected: bool) -> None:
        """Update connectivity; listeners fire only on a transition."""
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("network_status_changed", connected=connected)
        for listener in list(self._listeners):
            listener(connected)
