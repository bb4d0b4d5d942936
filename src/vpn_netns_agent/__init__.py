"""vpn-netns agent runtime helpers."""

from .config import AgentConfig, load_config, load_paths  # noqa: F401
from .events import NamespaceStart, NamespaceStop  # noqa: F401
from .supervisor import NamespaceSupervisor  # noqa: F401

__all__ = [
    "AgentConfig",
    "NamespaceStart",
    "NamespaceStop",
    "NamespaceSupervisor",
    "load_config",
    "load_paths",
]
