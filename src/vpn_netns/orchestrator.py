"""Bring a confined network namespace up.

The orchestrator walks a fixed sequence of states, each a precondition for
the next, and stops at the first failure.  It never cleans up after itself:
whatever was created stays discoverable so that
:class:`~vpn_netns.teardown.TeardownController` can remove it, which the
lifecycle supervisor always does after a failed ``up``.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Event
from typing import Callable, Optional

from .backends.base import NetworkBackend
from .config import (
    DEFAULT_RESOLVER_ROOT,
    IPV4_PREFIXLEN,
    IPV6_PREFIXLEN,
    NamespaceDefinition,
    ResourceNames,
    validate_definition,
)
from .errors import (
    ConfinementError,
    OperationCancelled,
    ReachabilityError,
    ResourceConflictError,
    ValidationError,
)
from .nftables import generate_host_ruleset, generate_namespace_ruleset
from .wgquick import ParsedTunnelConfig, parse_file

LOG = logging.getLogger(__name__)

RESOLV_CONF = "resolv.conf"

_ENDPOINT = re.compile(r"^(?:\[(?P<bracketed>[^\]]+)\]|(?P<plain>[^:\[\]]+)):\d+$")


class UpState(Enum):
    """States of the ``up`` sequence, in execution order."""

    PARSE = "parse"
    CREATE_NAMESPACE = "create-namespace"
    PROVISION_TUNNEL = "provision-tunnel-interface"
    WAIT_FOR_ENDPOINTS = "wait-for-endpoints"
    PROVISION_BRIDGE = "provision-bridge-and-veth"
    INSTALL_ROUTES = "install-routes"
    LOAD_NAMESPACE_RULESET = "load-namespace-ruleset"
    LOAD_HOST_RULESET = "load-host-ruleset"
    WRITE_RESOLVER = "write-resolver-config"


@dataclass(frozen=True)
class ProbePolicy:
    """Bounded retry used while waiting for tunnel endpoints."""

    attempts: int = 5
    interval: float = 1.0
    timeout: int = 2


@dataclass
class UpResult:
    """Artifacts of a successful ``up``."""

    name: str
    parsed: ParsedTunnelConfig
    namespace_ruleset: str
    host_ruleset: str
    resolver_path: Path


def endpoint_host(endpoint: str) -> Optional[str]:
    """Return the host part of ``host:port`` or ``[v6]:port``.

    ``None`` means the endpoint could not be parsed.  A host starting with
    ``-`` is rejected as well since it would read as an option to ``ping``.
    """

    match = _ENDPOINT.match(endpoint.strip())
    if not match:
        return None
    host = match.group("bracketed") or match.group("plain")
    if host.startswith("-"):
        return None
    return host


class NamespaceOrchestrator:
    """Sequence namespace creation, addressing, policy and resolver setup."""

    def __init__(
        self,
        backend: NetworkBackend,
        *,
        resolver_root: Path = DEFAULT_RESOLVER_ROOT,
        probe_policy: Optional[ProbePolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backend = backend
        self._resolver_root = Path(resolver_root)
        self._probe = probe_policy or ProbePolicy()
        self._sleep = sleep

    def up(
        self, definition: NamespaceDefinition, stop_event: Optional[Event] = None
    ) -> UpResult:
        """Provision ``definition``; raise on the first failing state."""

        validate_definition(definition)
        names = definition.names
        state = UpState.PARSE
        try:
            LOG.info("%s: %s", definition.name, state.value)
            parsed = self._parse(definition)

            state = self._enter(definition, UpState.CREATE_NAMESPACE, stop_event)
            self._create_namespace(names)

            state = self._enter(definition, UpState.PROVISION_TUNNEL, stop_event)
            self._provision_tunnel(definition, parsed)

            state = self._enter(definition, UpState.WAIT_FOR_ENDPOINTS, stop_event)
            self._wait_for_endpoints(parsed)

            state = self._enter(definition, UpState.PROVISION_BRIDGE, stop_event)
            self._provision_bridge(definition)

            state = self._enter(definition, UpState.INSTALL_ROUTES, stop_event)
            self._install_routes(definition)

            state = self._enter(definition, UpState.LOAD_NAMESPACE_RULESET, stop_event)
            namespace_ruleset = generate_namespace_ruleset(definition, parsed.dns_servers)
            self._backend.load_ruleset(namespace_ruleset, namespace=names.namespace)

            state = self._enter(definition, UpState.LOAD_HOST_RULESET, stop_event)
            host_ruleset = self._load_host_ruleset(definition)

            state = self._enter(definition, UpState.WRITE_RESOLVER, stop_event)
            resolver_path = self._write_resolver(definition.name, parsed)
        except (ConfinementError, OSError) as exc:
            LOG.error("%s: setup failed during %s: %s", definition.name, state.value, exc)
            raise

        LOG.info("%s: namespace setup complete", definition.name)
        return UpResult(
            name=definition.name,
            parsed=parsed,
            namespace_ruleset=namespace_ruleset,
            host_ruleset=host_ruleset,
            resolver_path=resolver_path,
        )

    def _enter(
        self,
        definition: NamespaceDefinition,
        state: UpState,
        stop_event: Optional[Event],
    ) -> UpState:
        if stop_event is not None and stop_event.is_set():
            raise OperationCancelled(
                f"stop requested for '{definition.name}' before {state.value}"
            )
        LOG.info("%s: %s", definition.name, state.value)
        return state

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------
    def _parse(self, definition: NamespaceDefinition) -> ParsedTunnelConfig:
        parsed = parse_file(definition.config_file)
        if not parsed.nameservers:
            raise ValidationError(
                "DNS lists no server address; the kill switch has nothing to allow",
                field="DNS",
            )
        LOG.info(
            "%s: parsed %d address(es), %d DNS server(s), %d peer(s)",
            definition.name,
            len(parsed.addresses),
            len(parsed.dns_servers),
            parsed.peer_count,
        )
        return parsed

    # ------------------------------------------------------------------
    # Namespace and tunnel interface
    # ------------------------------------------------------------------
    def _create_namespace(self, names: ResourceNames) -> None:
        if self._backend.namespace_exists(names.namespace):
            raise ResourceConflictError(f"namespace '{names.namespace}' already exists")
        self._backend.create_namespace(names.namespace)
        self._backend.set_link_up("lo", namespace=names.namespace)

    def _provision_tunnel(
        self, definition: NamespaceDefinition, parsed: ParsedTunnelConfig
    ) -> None:
        names = definition.names
        if self._backend.link_exists(names.tunnel):
            raise ResourceConflictError(f"interface '{names.tunnel}' already exists")

        # Created on the host so the encrypted UDP socket keeps host routing,
        # then moved so only the decrypted side lives in the namespace.
        self._backend.create_link(names.tunnel, "wireguard")
        self._backend.configure_wireguard(names.tunnel, parsed.stripped_config)
        self._backend.move_link(names.tunnel, names.namespace)

        for address in parsed.addresses:
            if ipaddress.ip_interface(address).version == 6 and not definition.ipv6_enabled:
                LOG.warning(
                    "%s: skipping tunnel address %s, IPv6 is disabled",
                    definition.name,
                    address,
                )
                continue
            self._backend.add_address(names.tunnel, address, namespace=names.namespace)

        if parsed.mtu is not None:
            self._backend.set_mtu(names.tunnel, parsed.mtu, namespace=names.namespace)

        self._backend.set_link_up(names.tunnel, namespace=names.namespace)

    def _wait_for_endpoints(self, parsed: ParsedTunnelConfig) -> None:
        for endpoint in parsed.endpoints:
            host = endpoint_host(endpoint)
            if host is None:
                LOG.warning(
                    "could not parse endpoint '%s', skipping reachability check",
                    endpoint,
                )
                continue
            self._wait_for_host(host)

    def _wait_for_host(self, host: str) -> None:
        LOG.info("Waiting for endpoint '%s' to be reachable", host)
        for attempt in range(1, self._probe.attempts + 1):
            if self._backend.probe(host, self._probe.timeout):
                LOG.info("Endpoint '%s' reachable", host)
                return
            LOG.debug(
                "Endpoint '%s' unreachable (attempt %d/%d)",
                host,
                attempt,
                self._probe.attempts,
            )
            if attempt < self._probe.attempts:
                self._sleep(self._probe.interval)
        raise ReachabilityError(host, self._probe.attempts)

    # ------------------------------------------------------------------
    # Bridge, veth and routes
    # ------------------------------------------------------------------
    def _provision_bridge(self, definition: NamespaceDefinition) -> None:
        names = definition.names
        if self._backend.link_exists(names.bridge):
            raise ResourceConflictError(f"bridge '{names.bridge}' already exists")

        self._backend.create_link(names.bridge, "bridge")
        self._backend.add_address(
            names.bridge, f"{definition.bridge_address}/{IPV4_PREFIXLEN}"
        )
        if definition.ipv6_enabled:
            self._backend.add_address(
                names.bridge, f"{definition.bridge_address_v6}/{IPV6_PREFIXLEN}"
            )
        self._backend.set_link_up(names.bridge)

        self._backend.create_veth(names.veth_host, names.veth_namespace, names.namespace)
        self._backend.set_master(names.veth_host, names.bridge)
        self._backend.set_link_up(names.veth_host)

        self._backend.add_address(
            names.veth_namespace,
            f"{definition.namespace_address}/{IPV4_PREFIXLEN}",
            namespace=names.namespace,
        )
        if definition.ipv6_enabled:
            self._backend.add_address(
                names.veth_namespace,
                f"{definition.namespace_address_v6}/{IPV6_PREFIXLEN}",
                namespace=names.namespace,
            )
        self._backend.set_link_up(names.veth_namespace, namespace=names.namespace)

    def _install_routes(self, definition: NamespaceDefinition) -> None:
        names = definition.names
        self._backend.add_default_route(names.tunnel, 4, names.namespace)
        if definition.ipv6_enabled:
            self._backend.add_default_route(names.tunnel, 6, names.namespace)

        # Replies to LAN clients must leave via the bridge, not the tunnel.
        for entry in definition.accessible_from:
            network = ipaddress.ip_network(entry, strict=False)
            if network.version == 4:
                gateway = definition.bridge_address
            elif definition.ipv6_enabled:
                gateway = definition.bridge_address_v6
            else:
                LOG.debug("%s: IPv6 disabled, no route for %s", definition.name, entry)
                continue
            self._backend.add_route(str(network), gateway, names.namespace)

    # ------------------------------------------------------------------
    # Policy and resolver
    # ------------------------------------------------------------------
    def _load_host_ruleset(self, definition: NamespaceDefinition) -> str:
        host_ruleset = generate_host_ruleset(definition)
        if not host_ruleset:
            LOG.debug("%s: no port mappings, skipping host NAT", definition.name)
            return host_ruleset

        names = definition.names
        if self._backend.table_exists(names.host_table):
            raise ResourceConflictError(
                f"host table 'inet {names.host_table}' already exists"
            )
        self._backend.load_ruleset(host_ruleset)
        return host_ruleset

    def _write_resolver(self, name: str, parsed: ParsedTunnelConfig) -> Path:
        directory = self._resolver_root / name
        if directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True)

        lines = [f"nameserver {server}" for server in parsed.nameservers]
        if parsed.search_domains:
            lines.append("search " + " ".join(parsed.search_domains))

        path = directory / RESOLV_CONF
        path.write_text("\n".join(lines) + "\n")
        LOG.debug("%s: wrote %s", name, path)
        return path
