from pathlib import Path
from typing import Dict, Optional, Set, Tuple

import pytest

from vpn_netns.backends.base import NetworkBackend
from vpn_netns.config import NamespaceDefinition
from vpn_netns.errors import CommandError, ResourceConflictError

MULLVAD_CONFIG = """\
[Interface]
# Device: Happy Fox
PrivateKey = aGVsbG8gd29ybGQgdGhpcyBpcyBhIHRlc3Qga2V5IQ==
Address = 10.64.186.60/32,fc00:bbbb:bbbb:bb01::1:ba3b/128
DNS = 10.64.0.1

[Peer]
PublicKey = cHVibGljIGtleSBmb3IgdGVzdGluZyBwdXJwb3Nlcw==
AllowedIPs = 0.0.0.0/0,::0/0
Endpoint = 185.213.154.68:51820
"""

Link = Tuple[str, Optional[str]]


class RecordingBackend(NetworkBackend):
    """In-memory kernel model that records every call it receives."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.namespaces: Set[str] = set()
        self.links: Dict[Link, dict] = {}
        self.tables: Dict[Tuple[Optional[str], str], str] = {}
        self.wireguard: Dict[str, str] = {}
        self.routes: list[tuple] = []
        self.unreachable: Set[str] = set()
        self.failures: Dict[str, Exception] = {}

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if method in self.failures:
            raise self.failures[method]

    def _link(self, ifname: str, namespace: Optional[str]) -> dict:
        try:
            return self.links[(ifname, namespace)]
        except KeyError:
            raise ResourceConflictError(f"link '{ifname}' not found") from None

    def method_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    # -- namespaces -----------------------------------------------------
    def namespace_exists(self, name):
        return name in self.namespaces

    def create_namespace(self, name):
        self._record("create_namespace", name)
        self.namespaces.add(name)
        self.links[("lo", name)] = {"up": False}

    def delete_namespace(self, name):
        self._record("delete_namespace", name)
        self.namespaces.discard(name)
        for key in [key for key in self.links if key[1] == name]:
            peer = self.links.pop(key).get("peer")
            if peer:
                self.links.pop(peer, None)
        for key in [key for key in self.tables if key[0] == name]:
            del self.tables[key]

    # -- links ----------------------------------------------------------
    def link_exists(self, ifname, namespace=None):
        return (ifname, namespace) in self.links

    def create_link(self, ifname, kind):
        self._record("create_link", ifname, kind)
        self.links[(ifname, None)] = {"kind": kind, "up": False, "addresses": []}

    def create_veth(self, ifname, peer, peer_namespace):
        self._record("create_veth", ifname, peer, peer_namespace)
        self.links[(ifname, None)] = {
            "kind": "veth",
            "up": False,
            "addresses": [],
            "peer": (peer, peer_namespace),
        }
        self.links[(peer, peer_namespace)] = {
            "kind": "veth",
            "up": False,
            "addresses": [],
            "peer": (ifname, None),
        }

    def delete_link(self, ifname, namespace=None):
        self._record("delete_link", ifname, namespace)
        link = self.links.pop((ifname, namespace), None)
        if link is None:
            raise ResourceConflictError(f"link '{ifname}' not found")
        if link.get("peer"):
            self.links.pop(link["peer"], None)

    def move_link(self, ifname, namespace):
        self._record("move_link", ifname, namespace)
        self.links[(ifname, namespace)] = self.links.pop((ifname, None))

    def set_link_up(self, ifname, namespace=None):
        self._record("set_link_up", ifname, namespace)
        self._link(ifname, namespace)["up"] = True

    def set_mtu(self, ifname, mtu, namespace=None):
        self._record("set_mtu", ifname, mtu, namespace)
        self._link(ifname, namespace)["mtu"] = mtu

    def set_master(self, ifname, master):
        self._record("set_master", ifname, master)
        self._link(master, None)
        self._link(ifname, None)["master"] = master

    # -- addresses and routes -------------------------------------------
    def add_address(self, ifname, address, namespace=None):
        self._record("add_address", ifname, address, namespace)
        self._link(ifname, namespace)["addresses"].append(address)

    def add_default_route(self, ifname, version, namespace):
        self._record("add_default_route", ifname, version, namespace)
        self.routes.append((namespace, "default", version, ifname))

    def add_route(self, destination, gateway, namespace):
        self._record("add_route", destination, gateway, namespace)
        self.routes.append((namespace, destination, gateway))

    # -- tunnel -----------------------------------------------------------
    def configure_wireguard(self, ifname, config):
        self._record("configure_wireguard", ifname)
        self.wireguard[ifname] = config

    def probe(self, host, timeout):
        self._record("probe", host, timeout)
        return host not in self.unreachable

    # -- nftables ---------------------------------------------------------
    def load_ruleset(self, ruleset, namespace=None):
        self._record("load_ruleset", namespace)
        table = ruleset.split("\n", 1)[0].split()[2]
        if (namespace, table) in self.tables:
            raise CommandError(["nft", "-f", "-"], 1, f"table {table} exists")
        self.tables[(namespace, table)] = ruleset

    def table_exists(self, table, namespace=None, family="inet"):
        return (namespace, table) in self.tables

    def delete_table(self, table, namespace=None, family="inet"):
        self._record("delete_table", table, namespace)
        if self.tables.pop((namespace, table), None) is None:
            raise CommandError(["nft", "delete", "table", family, table], 1, "no such table")


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def wg_config(tmp_path: Path) -> Path:
    path = tmp_path / "wg0.conf"
    path.write_text(MULLVAD_CONFIG)
    return path


@pytest.fixture
def definition(wg_config: Path) -> NamespaceDefinition:
    return NamespaceDefinition(name="wg", config_file=wg_config)
