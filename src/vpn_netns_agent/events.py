"""Lifecycle events consumed by the namespace supervisor."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class NamespaceStart:
    """The confined workload for ``namespace`` is about to start.

    The supervisor brings the namespace up and tears it down again if any
    step fails, so a failed start never leaves resources behind.
    """

    namespace: str


@dataclass(frozen=True)
class NamespaceStop:
    """The confined workload for ``namespace`` has stopped."""

    namespace: str
