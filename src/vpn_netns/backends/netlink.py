"""Linux backend: pyroute2 for netlink, ``wg``/``nft``/``ping`` for the rest.

Links, addresses, routes and namespaces are managed over netlink with
pyroute2.  Tunnel configuration, nftables programs and reachability probes
go through their command line tools, always invoked with an argument list
(never a shell) so no configuration value can be interpreted as syntax.
"""

from __future__ import annotations

import errno
import ipaddress
import logging
import socket
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from pyroute2 import IPRoute, NetNS, netns
from pyroute2.netlink.exceptions import NetlinkError

from ..errors import CommandError, ResourceConflictError
from .base import NetworkBackend

LOG = logging.getLogger(__name__)

_FAMILIES = {4: socket.AF_INET, 6: socket.AF_INET6}
_DEFAULT_DESTINATIONS = {4: "0.0.0.0/0", 6: "::/0"}


def run(
    cmd: Sequence[str], input: Optional[str] = None
) -> subprocess.CompletedProcess[str]:
    LOG.debug("Executing: %s", " ".join(cmd))
    try:
        return subprocess.run(
            list(cmd), input=input, check=False, text=True, capture_output=True
        )
    except FileNotFoundError as exc:
        raise CommandError(cmd, stderr=f"{exc.filename}: command not found") from exc


def _in_namespace(cmd: List[str], namespace: Optional[str]) -> List[str]:
    if namespace is None:
        return cmd
    return ["ip", "netns", "exec", namespace, *cmd]


def _checked(
    cmd: Sequence[str], input: Optional[str] = None
) -> subprocess.CompletedProcess[str]:
    result = run(cmd, input=input)
    if result.returncode != 0:
        LOG.error("Command failed: %s: %s", " ".join(cmd), result.stderr.strip())
        raise CommandError(cmd, result.returncode, result.stderr)
    return result


class NetlinkBackend(NetworkBackend):
    """Apply operations to the running kernel."""

    @contextmanager
    def _route(self, namespace: Optional[str] = None) -> Iterator[IPRoute]:
        # flags=0 opens an existing namespace without creating it.
        ipr = NetNS(namespace, flags=0) if namespace else IPRoute()
        try:
            yield ipr
        finally:
            ipr.close()

    @contextmanager
    def _request(self, description: str) -> Iterator[None]:
        try:
            yield
        except NetlinkError as exc:
            if exc.code == errno.EEXIST:
                raise ResourceConflictError(f"{description}: already exists") from exc
            if exc.code in (errno.ENODEV, errno.ENOENT):
                raise ResourceConflictError(f"{description}: no such device") from exc
            raise CommandError(description, stderr=str(exc)) from exc

    @staticmethod
    def _index(ipr: IPRoute, ifname: str, namespace: Optional[str]) -> int:
        indices = ipr.link_lookup(ifname=ifname)
        if not indices:
            where = f"namespace '{namespace}'" if namespace else "host"
            raise ResourceConflictError(f"link '{ifname}' not found in {where}")
        return indices[0]

    # -- namespaces -----------------------------------------------------
    def namespace_exists(self, name: str) -> bool:
        return name in netns.listnetns()

    def create_namespace(self, name: str) -> None:
        LOG.debug("Creating network namespace %s", name)
        try:
            netns.create(name)
        except OSError as exc:
            if exc.errno == errno.EEXIST:
                raise ResourceConflictError(f"namespace '{name}' already exists") from exc
            raise CommandError(f"create namespace {name}", stderr=str(exc)) from exc

    def delete_namespace(self, name: str) -> None:
        LOG.debug("Deleting network namespace %s", name)
        try:
            netns.remove(name)
        except OSError as exc:
            if exc.errno == errno.ENOENT:
                raise ResourceConflictError(f"namespace '{name}' vanished") from exc
            raise CommandError(f"delete namespace {name}", stderr=str(exc)) from exc

    # -- links ----------------------------------------------------------
    def link_exists(self, ifname: str, namespace: Optional[str] = None) -> bool:
        with self._route(namespace) as ipr:
            return bool(ipr.link_lookup(ifname=ifname))

    def create_link(self, ifname: str, kind: str) -> None:
        LOG.debug("Creating %s link %s", kind, ifname)
        with self._request(f"add {kind} link {ifname}"), self._route() as ipr:
            ipr.link("add", ifname=ifname, kind=kind)

    def create_veth(self, ifname: str, peer: str, peer_namespace: str) -> None:
        LOG.debug("Creating veth %s <-> %s@%s", ifname, peer, peer_namespace)
        with self._request(f"add veth {ifname}"), self._route() as ipr:
            ipr.link(
                "add",
                ifname=ifname,
                kind="veth",
                peer={"ifname": peer, "net_ns_fd": peer_namespace},
            )

    def delete_link(self, ifname: str, namespace: Optional[str] = None) -> None:
        LOG.debug("Deleting link %s", ifname)
        with self._request(f"delete link {ifname}"), self._route(namespace) as ipr:
            ipr.link("del", index=self._index(ipr, ifname, namespace))

    def move_link(self, ifname: str, namespace: str) -> None:
        LOG.debug("Moving link %s into namespace %s", ifname, namespace)
        with self._request(f"move {ifname} to {namespace}"), self._route() as ipr:
            ipr.link("set", index=self._index(ipr, ifname, None), net_ns_fd=namespace)

    def set_link_up(self, ifname: str, namespace: Optional[str] = None) -> None:
        with self._request(f"set {ifname} up"), self._route(namespace) as ipr:
            ipr.link("set", index=self._index(ipr, ifname, namespace), state="up")

    def set_mtu(self, ifname: str, mtu: int, namespace: Optional[str] = None) -> None:
        with self._request(f"set {ifname} mtu {mtu}"), self._route(namespace) as ipr:
            ipr.link("set", index=self._index(ipr, ifname, namespace), mtu=mtu)

    def set_master(self, ifname: str, master: str) -> None:
        with self._request(f"set {ifname} master {master}"), self._route() as ipr:
            ipr.link(
                "set",
                index=self._index(ipr, ifname, None),
                master=self._index(ipr, master, None),
            )

    # -- addresses and routes -------------------------------------------
    def add_address(
        self, ifname: str, address: str, namespace: Optional[str] = None
    ) -> None:
        interface = ipaddress.ip_interface(address)
        LOG.debug("Adding address %s to %s", interface, ifname)
        with self._request(f"add address {interface} to {ifname}"), self._route(
            namespace
        ) as ipr:
            ipr.addr(
                "add",
                index=self._index(ipr, ifname, namespace),
                address=str(interface.ip),
                prefixlen=interface.network.prefixlen,
                family=_FAMILIES[interface.version],
            )

    def add_default_route(self, ifname: str, version: int, namespace: str) -> None:
        with self._request(f"add IPv{version} default route via {ifname}"), self._route(
            namespace
        ) as ipr:
            ipr.route(
                "add",
                dst=_DEFAULT_DESTINATIONS[version],
                oif=self._index(ipr, ifname, namespace),
                family=_FAMILIES[version],
            )

    def add_route(self, destination: str, gateway: str, namespace: str) -> None:
        network = ipaddress.ip_network(destination, strict=False)
        with self._request(f"add route {network} via {gateway}"), self._route(
            namespace
        ) as ipr:
            ipr.route(
                "add",
                dst=str(network),
                gateway=gateway,
                family=_FAMILIES[network.version],
            )

    # -- tunnel -----------------------------------------------------------
    def configure_wireguard(self, ifname: str, config: str) -> None:
        # NamedTemporaryFile is created 0600; the config holds the private key.
        with tempfile.NamedTemporaryFile("w", prefix="wg-", suffix=".conf") as fh:
            fh.write(config)
            fh.flush()
            _checked(["wg", "setconf", ifname, fh.name])

    def probe(self, host: str, timeout: int) -> bool:
        result = run(["ping", "-c", "1", "-W", str(timeout), "--", host])
        return result.returncode == 0

    # -- nftables ---------------------------------------------------------
    def load_ruleset(self, ruleset: str, namespace: Optional[str] = None) -> None:
        _checked(_in_namespace(["nft", "-f", "-"], namespace), input=ruleset)

    def table_exists(
        self, table: str, namespace: Optional[str] = None, family: str = "inet"
    ) -> bool:
        result = run(_in_namespace(["nft", "list", "table", family, table], namespace))
        return result.returncode == 0

    def delete_table(
        self, table: str, namespace: Optional[str] = None, family: str = "inet"
    ) -> None:
        _checked(_in_namespace(["nft", "delete", "table", family, table], namespace))
