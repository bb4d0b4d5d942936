"""Abstract interface for the OS operations the lifecycle code performs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class NetworkBackend(ABC):
    """Operations on namespaces, links, routes and nftables tables.

    ``namespace=None`` always means the host (initial) network namespace.
    Implementations raise :class:`~vpn_netns.errors.CommandError` when an
    operation fails and :class:`~vpn_netns.errors.ResourceConflictError`
    when a resource unexpectedly exists or is missing.
    """

    # -- namespaces -----------------------------------------------------
    @abstractmethod
    def namespace_exists(self, name: str) -> bool:
        """Return whether network namespace ``name`` exists."""

    @abstractmethod
    def create_namespace(self, name: str) -> None:
        """Create network namespace ``name``."""

    @abstractmethod
    def delete_namespace(self, name: str) -> None:
        """Delete network namespace ``name`` and every link inside it."""

    # -- links ----------------------------------------------------------
    @abstractmethod
    def link_exists(self, ifname: str, namespace: Optional[str] = None) -> bool:
        """Return whether ``ifname`` exists in ``namespace``."""

    @abstractmethod
    def create_link(self, ifname: str, kind: str) -> None:
        """Create a host link of ``kind`` (``wireguard``, ``bridge``)."""

    @abstractmethod
    def create_veth(self, ifname: str, peer: str, peer_namespace: str) -> None:
        """Create a veth pair with ``peer`` born inside ``peer_namespace``."""

    @abstractmethod
    def delete_link(self, ifname: str, namespace: Optional[str] = None) -> None:
        """Delete ``ifname``."""

    @abstractmethod
    def move_link(self, ifname: str, namespace: str) -> None:
        """Move host link ``ifname`` into ``namespace``."""

    @abstractmethod
    def set_link_up(self, ifname: str, namespace: Optional[str] = None) -> None:
        """Bring ``ifname`` up."""

    @abstractmethod
    def set_mtu(self, ifname: str, mtu: int, namespace: Optional[str] = None) -> None:
        """Set the MTU of ``ifname``."""

    @abstractmethod
    def set_master(self, ifname: str, master: str) -> None:
        """Enslave host link ``ifname`` to bridge ``master``."""

    # -- addresses and routes -------------------------------------------
    @abstractmethod
    def add_address(
        self, ifname: str, address: str, namespace: Optional[str] = None
    ) -> None:
        """Add ``address`` (``ip/prefixlen``) to ``ifname``."""

    @abstractmethod
    def add_default_route(self, ifname: str, version: int, namespace: str) -> None:
        """Route all IPv``version`` traffic in ``namespace`` out of ``ifname``."""

    @abstractmethod
    def add_route(self, destination: str, gateway: str, namespace: str) -> None:
        """Route ``destination`` via ``gateway`` inside ``namespace``."""

    # -- tunnel -----------------------------------------------------------
    @abstractmethod
    def configure_wireguard(self, ifname: str, config: str) -> None:
        """Apply a ``wg setconf`` style ``config`` to host link ``ifname``."""

    @abstractmethod
    def probe(self, host: str, timeout: int) -> bool:
        """Send one reachability probe to ``host`` from the host namespace."""

    # -- nftables ---------------------------------------------------------
    @abstractmethod
    def load_ruleset(self, ruleset: str, namespace: Optional[str] = None) -> None:
        """Load ``ruleset`` atomically as one nftables program."""

    @abstractmethod
    def table_exists(
        self, table: str, namespace: Optional[str] = None, family: str = "inet"
    ) -> bool:
        """Return whether nftables table ``family table`` is loaded."""

    @abstractmethod
    def delete_table(
        self, table: str, namespace: Optional[str] = None, family: str = "inet"
    ) -> None:
        """Delete nftables table ``family table``."""
