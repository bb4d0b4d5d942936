"""OS backends used by the orchestrator and teardown controller."""

from .base import NetworkBackend  # noqa: F401
from .netlink import NetlinkBackend  # noqa: F401

__all__ = ["NetlinkBackend", "NetworkBackend"]
