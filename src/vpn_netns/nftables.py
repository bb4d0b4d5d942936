"""nftables ruleset rendering for confined namespaces.

Two programs are produced, each loadable atomically with ``nft -f``:

* the namespace ruleset (``inet vpn-<name>``), loaded inside the namespace,
  implementing the kill switch, DNS restriction and input filtering;
* the host NAT ruleset (``inet vpn-<name>-fwd``), loaded on the host, which
  DNATs mapped ports into the namespace.

Rendering is a pure function of its inputs: chains are assembled as lists
of rules and joined once, so the same definition and DNS list always yield
byte-identical text.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .config import NamespaceDefinition

LOG = logging.getLogger(__name__)

FAMILY = "inet"
DNS_PORTS = (("udp", 53), ("tcp", 53), ("tcp", 853))
INDENT = "    "


@dataclass
class Chain:
    """A chain as data: optional base-chain header plus ordered rules."""

    name: str
    header: Optional[str] = None
    rules: List[str] = field(default_factory=list)

    def render(self) -> List[str]:
        lines = [f"{INDENT}chain {self.name} {{"]
        if self.header:
            lines.append(f"{INDENT * 2}{self.header}")
        lines.extend(f"{INDENT * 2}{rule}" for rule in self.rules)
        lines.append(f"{INDENT}}}")
        return lines


@dataclass
class Table:
    """An nftables table rendered as a single loadable program."""

    name: str
    chains: List[Chain]
    family: str = FAMILY

    def render(self) -> str:
        lines = [f"table {self.family} {self.name} {{"]
        for index, chain in enumerate(self.chains):
            if index:
                lines.append("")
            lines.extend(chain.render())
        lines.append("}")
        return "\n".join(lines) + "\n"


def port_set(ports: Sequence[int]) -> str:
    """Render ``ports`` as a single port or an anonymous set."""

    if len(ports) == 1:
        return str(ports[0])
    return "{ " + ", ".join(str(port) for port in ports) + " }"


def group_by_protocol(entries: Iterable[tuple]) -> Dict[str, List[int]]:
    """Group ``(port, Protocol)`` pairs into ``{"tcp": [...], "udp": [...]}``.

    Protocols come out in sorted order and ports keep their first-seen order
    with duplicates removed.
    """

    grouped: Dict[str, Dict[int, None]] = {}
    for port, protocol in entries:
        for proto in protocol.expand():
            grouped.setdefault(proto, {})[port] = None
    return {proto: list(grouped[proto]) for proto in sorted(grouped)}


class NftablesRenderer:
    """Render the namespace and host rulesets for one definition."""

    def __init__(self, definition: NamespaceDefinition) -> None:
        self._definition = definition
        self._names = definition.names

    # ------------------------------------------------------------------
    # Namespace ruleset
    # ------------------------------------------------------------------
    def namespace_table(self, dns_servers: Sequence[str]) -> Table:
        return Table(
            name=self._names.table,
            chains=[
                self._input_chain(),
                self._output_chain(),
                Chain(
                    "forward",
                    header="type filter hook forward priority filter; policy drop;",
                ),
                self._dns_restrict_chain(dns_servers),
            ],
        )

    def _input_chain(self) -> Chain:
        rules = [
            "iif lo accept",
            "ct state invalid drop",
            "ct state established,related accept",
        ]
        if self._definition.ipv6_enabled:
            rules.append("ip6 nexthdr ipv6-icmp accept")

        mapped = group_by_protocol(
            (m.namespace_port, m.protocol) for m in self._definition.port_mappings
        )
        rules.extend(self._input_rules(self._names.veth_namespace, mapped))

        open_ports = group_by_protocol(
            (p.port, p.protocol) for p in self._definition.open_vpn_ports
        )
        rules.extend(self._input_rules(self._names.tunnel, open_ports))

        return Chain(
            "input",
            header="type filter hook input priority filter; policy drop;",
            rules=rules,
        )

    @staticmethod
    def _input_rules(interface: str, by_protocol: Dict[str, List[int]]) -> List[str]:
        return [
            f'iifname "{interface}" {proto} dport {port_set(ports)} accept'
            for proto, ports in by_protocol.items()
        ]

    def _output_chain(self) -> Chain:
        rules = ["oif lo accept", "ct state established,related accept"]
        # DNS must be diverted before the tunnel accept below, otherwise
        # queries to arbitrary resolvers would leave through the tunnel.
        rules.extend(f"{proto} dport {port} jump dns-restrict" for proto, port in DNS_PORTS)
        rules.append(f'oifname "{self._names.tunnel}" accept')
        return Chain(
            "output",
            header="type filter hook output priority filter; policy drop;",
            rules=rules,
        )

    def _dns_restrict_chain(self, dns_servers: Sequence[str]) -> Chain:
        rules: List[str] = []
        for server in dns_servers:
            try:
                address = ipaddress.ip_address(server)
            except ValueError:
                LOG.debug("Skipping non-address DNS entry %r in dns-restrict", server)
                continue
            if address.version == 6:
                if not self._definition.ipv6_enabled:
                    LOG.warning(
                        "IPv6 DNS server %s ignored: IPv6 disabled for '%s'",
                        server,
                        self._definition.name,
                    )
                    continue
                match = f"ip6 daddr {address}"
            else:
                match = f"ip daddr {address}"
            rules.extend(f"{match} {proto} dport {port} accept" for proto, port in DNS_PORTS)
        rules.append("drop")
        return Chain("dns-restrict", rules=rules)

    # ------------------------------------------------------------------
    # Host NAT ruleset
    # ------------------------------------------------------------------
    def host_table(self) -> Optional[Table]:
        if not self._definition.port_mappings:
            return None

        prerouting: List[str] = []
        for mapping in self._definition.port_mappings:
            for proto in mapping.protocol.expand():
                prerouting.append(
                    f"{proto} dport {mapping.host_port} dnat ip to "
                    f"{self._definition.namespace_address}:{mapping.namespace_port}"
                )
                if self._definition.ipv6_enabled:
                    prerouting.append(
                        f"{proto} dport {mapping.host_port} dnat ip6 to "
                        f"[{self._definition.namespace_address_v6}]:{mapping.namespace_port}"
                    )

        return Table(
            name=self._names.host_table,
            chains=[
                Chain(
                    "prerouting",
                    header="type nat hook prerouting priority dstnat;",
                    rules=prerouting,
                ),
                Chain(
                    "postrouting",
                    header="type nat hook postrouting priority srcnat;",
                    # Only replies for DNAT'd flows; never general host egress.
                    rules=[f'oifname "{self._names.bridge}" ct status dnat masquerade'],
                ),
            ],
        )


def generate_namespace_ruleset(
    definition: NamespaceDefinition, dns_servers: Sequence[str]
) -> str:
    """Return the in-namespace kill switch ruleset as ``nft -f`` input."""

    return NftablesRenderer(definition).namespace_table(dns_servers).render()


def generate_host_ruleset(definition: NamespaceDefinition) -> str:
    """Return the host NAT ruleset, or ``""`` when nothing is port-mapped."""

    table = NftablesRenderer(definition).host_table()
    return table.render() if table else ""
