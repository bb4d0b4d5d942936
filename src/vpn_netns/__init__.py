"""Confine services to a network namespace whose only route is a WireGuard tunnel.

The package turns a wg-quick configuration plus a small
:class:`~vpn_netns.config.NamespaceDefinition` into a running namespace:

* :mod:`vpn_netns.wgquick` parses and sanitises the wg-quick file so that no
  wg-quick-only directive (``PostUp`` and friends) ever reaches ``wg setconf``;
* :mod:`vpn_netns.nftables` renders the kill switch and the optional host NAT
  table as plain nftables text;
* :class:`~vpn_netns.orchestrator.NamespaceOrchestrator` sequences the
  namespace, tunnel, bridge, routes, rulesets and resolver; and
* :class:`~vpn_netns.teardown.TeardownController` removes all of it again,
  idempotently, from the namespace name alone.

Kernel access goes through :class:`~vpn_netns.backends.NetworkBackend` so the
whole lifecycle can be exercised in unit tests without privileges.
"""

from .orchestrator import NamespaceOrchestrator  # noqa: F401
from .teardown import TeardownController  # noqa: F401

__all__ = ["NamespaceOrchestrator", "TeardownController"]
