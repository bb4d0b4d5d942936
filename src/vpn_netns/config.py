"""Configuration data structures for confined network namespaces.

These dataclasses describe one namespace the way the lifecycle code consumes
it: plain values with explicit defaults, validated once before any OS state
is touched.  Every interface, table and directory name is derived from the
namespace name so that teardown can find resources from the name alone.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Sequence, Tuple

from .errors import ValidationError

NAME_PATTERN = re.compile(r"^[a-z0-9-]{1,7}$")

# Linux limits interface names to IFNAMSIZ - 1 characters.
IFNAMSIZ = 16

IPV4_PREFIXLEN = 24
IPV6_PREFIXLEN = 64

DEFAULT_NAMESPACE_ADDRESS = "192.168.15.1"
DEFAULT_BRIDGE_ADDRESS = "192.168.15.5"
DEFAULT_NAMESPACE_ADDRESS_V6 = "fd93:9701:1d00::2"
DEFAULT_BRIDGE_ADDRESS_V6 = "fd93:9701:1d00::1"
DEFAULT_RESOLVER_ROOT = Path("/etc/netns")


class Protocol(Enum):
    """Transport protocols accepted for port rules."""

    TCP = "tcp"
    UDP = "udp"
    BOTH = "both"

    @classmethod
    def parse(cls, value: str) -> "Protocol":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"unsupported protocol '{value}' (expected tcp, udp or both)",
                field="protocol",
            ) from None

    def expand(self) -> Tuple[str, ...]:
        """Return the concrete nftables protocol names for this value."""

        if self is Protocol.BOTH:
            return ("tcp", "udp")
        return (self.value,)


@dataclass(frozen=True)
class PortMapping:
    """Forward ``host_port`` on the host to ``namespace_port`` inside."""

    host_port: int
    namespace_port: int
    protocol: Protocol = Protocol.TCP


@dataclass(frozen=True)
class OpenPort:
    """A port left open on the tunnel interface (e.g. for seeding)."""

    port: int
    protocol: Protocol = Protocol.TCP


@dataclass(frozen=True)
class ResourceNames:
    """Names of every OS resource owned by one namespace."""

    namespace: str
    tunnel: str
    bridge: str
    veth_namespace: str
    veth_host: str
    table: str
    host_table: str

    @classmethod
    def for_namespace(cls, name: str) -> "ResourceNames":
        return cls(
            namespace=name,
            tunnel=f"{name}0",
            bridge=f"{name}-br",
            veth_namespace=f"veth-{name}",
            veth_host=f"veth-{name}-br",
            table=f"vpn-{name}",
            host_table=f"vpn-{name}-fwd",
        )

    def interfaces(self) -> List[str]:
        return [self.tunnel, self.bridge, self.veth_namespace, self.veth_host]


@dataclass(frozen=True)
class NamespaceDefinition:
    """Everything needed to bring one confined namespace up.

    Attributes
    ----------
    name:
        Namespace identity; 1-7 characters of ``[a-z0-9-]``.
    config_file:
        Path to the wg-quick configuration.  It is read on every activation
        and never copied, since it usually holds the private key.
    accessible_from:
        Subnets or single addresses that may reach the namespace over the
        bridge.  Replies to them are routed via the bridge, not the tunnel.
    namespace_address, bridge_address:
        IPv4 addresses of the namespace veth end and of the host bridge.
    namespace_address_v6, bridge_address_v6:
        IPv6 counterparts, only used when ``ipv6_enabled`` is set.
    port_mappings:
        Host ports DNAT'd into the namespace, in declaration order.
    open_vpn_ports:
        Ports accepted on the tunnel interface, in declaration order.
    """

    name: str
    config_file: Path
    accessible_from: Sequence[str] = ()
    namespace_address: str = DEFAULT_NAMESPACE_ADDRESS
    bridge_address: str = DEFAULT_BRIDGE_ADDRESS
    namespace_address_v6: str = DEFAULT_NAMESPACE_ADDRESS_V6
    bridge_address_v6: str = DEFAULT_BRIDGE_ADDRESS_V6
    port_mappings: Sequence[PortMapping] = ()
    open_vpn_ports: Sequence[OpenPort] = ()
    ipv6_enabled: bool = True

    @property
    def names(self) -> ResourceNames:
        return ResourceNames.for_namespace(self.name)


def validate_name(name: str) -> None:
    """Reject names that would overflow derived interface names."""

    if isinstance(name, str) and NAME_PATTERN.match(name):
        return

    if isinstance(name, str) and len(name) > 7:
        longest = f"veth-{name}-br"
        raise ValidationError(
            f'name "{name}" is {len(name)} characters; maximum is 7 '
            f'because the longest derived interface name "{longest}" '
            f"({len(longest)} characters) must fit the kernel limit of "
            f"{IFNAMSIZ - 1} (IFNAMSIZ)",
            field="name",
        )
    raise ValidationError(
        f"invalid namespace name {name!r}: expected 1-7 characters of "
        "lowercase letters, digits and '-'",
        field="name",
    )


def _validate_port(value: int, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"port must be an integer, got {value!r}", field=field)
    if not 1 <= value <= 65535:
        raise ValidationError(f"port {value} is outside 1..65535", field=field)


def _validate_ip(value: str, version: int, field: str) -> None:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        raise ValidationError(f"invalid IP address {value!r}", field=field) from None
    if address.version != version:
        raise ValidationError(
            f"expected an IPv{version} address, got {value!r}", field=field
        )


def validate_definition(definition: NamespaceDefinition) -> None:
    """Check ``definition`` before any OS mutation.

    Raises :class:`~vpn_netns.errors.ValidationError` naming the offending
    field.
    """

    validate_name(definition.name)
    _validate_ip(definition.namespace_address, 4, "namespace_address")
    _validate_ip(definition.bridge_address, 4, "bridge_address")
    if definition.ipv6_enabled:
        _validate_ip(definition.namespace_address_v6, 6, "namespace_address_v6")
        _validate_ip(definition.bridge_address_v6, 6, "bridge_address_v6")

    for entry in definition.accessible_from:
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError:
            raise ValidationError(
                f"invalid subnet or address {entry!r}", field="accessible_from"
            ) from None

    for index, mapping in enumerate(definition.port_mappings):
        _validate_port(mapping.host_port, f"port_mappings[{index}].from")
        _validate_port(mapping.namespace_port, f"port_mappings[{index}].to")
        if not isinstance(mapping.protocol, Protocol):
            raise ValidationError(
                f"unsupported protocol {mapping.protocol!r}",
                field=f"port_mappings[{index}].protocol",
            )

    for index, open_port in enumerate(definition.open_vpn_ports):
        _validate_port(open_port.port, f"open_vpn_ports[{index}].port")
        if not isinstance(open_port.protocol, Protocol):
            raise ValidationError(
                f"unsupported protocol {open_port.protocol!r}",
                field=f"open_vpn_ports[{index}].protocol",
            )
