#!/usr/bin/env python3
"""Validate a live vpn-netns namespace after ``vpn-netns start``.

Run as root on the host.  ``--kill-switch`` takes the tunnel interface down
and checks that nothing leaves the namespace; ``--teardown`` stops the
namespace and checks that nothing is left behind.
"""

from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path
from typing import Iterable, Sequence


class ValidationError(RuntimeError):
    pass


def run(cmd: Iterable[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(list(cmd), capture_output=True, text=True, check=False)


def netns_exec(namespace: str, *args: str) -> subprocess.CompletedProcess[str]:
    return run(["ip", "netns", "exec", namespace, *args])


def expect_success(result: subprocess.CompletedProcess[str], what: str) -> str:
    if result.returncode != 0:
        raise ValidationError(f"{what} failed: {result.stderr.strip()}")
    return result.stdout


def check_link_up(ifname: str, namespace: str | None = None) -> None:
    path = f"/sys/class/net/{ifname}/operstate"
    result = netns_exec(namespace, "cat", path) if namespace else run(["cat", path])
    state = expect_success(result, f"reading {ifname} operstate").strip()
    if state != "up":
        where = f" in {namespace}" if namespace else ""
        raise ValidationError(f"{ifname}{where} is {state!r}, expected 'up'")


def check_namespace_ruleset(name: str, dns_servers: Sequence[str]) -> None:
    table = f"vpn-{name}"
    expect_success(
        netns_exec(name, "nft", "list", "table", "inet", table),
        f"listing table inet {table}",
    )

    dns_chain = expect_success(
        netns_exec(name, "nft", "list", "chain", "inet", table, "dns-restrict"),
        "listing dns-restrict chain",
    )
    for server in dns_servers:
        if server not in dns_chain:
            raise ValidationError(f"dns-restrict does not allow {server}")
    if "drop" not in dns_chain:
        raise ValidationError("dns-restrict does not end with a drop")

    output_chain = expect_success(
        netns_exec(name, "nft", "list", "chain", "inet", table, "output"),
        "listing output chain",
    )
    for rule in ("udp dport 53 jump dns-restrict", "tcp dport 853 jump dns-restrict"):
        if rule not in output_chain:
            raise ValidationError(f"output chain lacks '{rule}'")


def check_resolver(name: str, resolver_root: Path, dns_servers: Sequence[str]) -> None:
    resolv_conf = resolver_root / name / "resolv.conf"
    if not resolv_conf.is_file():
        raise ValidationError(f"{resolv_conf} was not written")
    content = resolv_conf.read_text()
    for server in dns_servers:
        if f"nameserver {server}" not in content:
            raise ValidationError(f"{resolv_conf} lacks nameserver {server}")


def check_host_ruleset(name: str, host_port: int) -> None:
    table = f"vpn-{name}-fwd"
    prerouting = expect_success(
        run(["nft", "list", "chain", "inet", table, "prerouting"]),
        f"listing {table} prerouting",
    )
    if str(host_port) not in prerouting:
        raise ValidationError(f"{table} has no DNAT rule for port {host_port}")
    postrouting = expect_success(
        run(["nft", "list", "chain", "inet", table, "postrouting"]),
        f"listing {table} postrouting",
    )
    if "masquerade" not in postrouting:
        raise ValidationError(f"{table} has no masquerade rule")


def check_kill_switch(name: str, bridge_address: str, external: str) -> None:
    expect_success(
        run(["ip", "-n", name, "link", "set", f"{name}0", "down"]),
        f"taking {name}0 down",
    )
    for target in (external, bridge_address):
        if netns_exec(name, "ping", "-c", "1", "-W", "2", target).returncode == 0:
            raise ValidationError(f"{target} reachable from {name} with the tunnel down")


def check_teardown(name: str, resolver_root: Path) -> None:
    expect_success(run(["vpn-netns", "stop", name]), f"stopping {name}")

    if run(["ip", "link", "show", f"{name}-br"]).returncode == 0:
        raise ValidationError(f"bridge {name}-br survived teardown")
    namespaces = expect_success(run(["ip", "netns", "list"]), "listing namespaces")
    if any(line.split()[0] == name for line in namespaces.splitlines() if line.strip()):
        raise ValidationError(f"namespace {name} survived teardown")
    if run(["nft", "list", "table", "inet", f"vpn-{name}-fwd"]).returncode == 0:
        raise ValidationError(f"host table vpn-{name}-fwd survived teardown")
    if (resolver_root / name).exists():
        raise ValidationError(f"{resolver_root / name} survived teardown")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("name", help="Namespace to validate")
    parser.add_argument(
        "--dns",
        action="append",
        default=[],
        help="DNS server expected in dns-restrict and resolv.conf (repeatable)",
    )
    parser.add_argument("--resolver-root", type=Path, default=Path("/etc/netns"))
    parser.add_argument("--bridge-address", default="192.168.15.5")
    parser.add_argument(
        "--host-port",
        type=int,
        help="Mapped host port expected in the host NAT table",
    )
    parser.add_argument(
        "--kill-switch",
        action="store_true",
        help="Take the tunnel down and verify no traffic leaves (destructive)",
    )
    parser.add_argument("--external", default="8.8.8.8")
    parser.add_argument(
        "--teardown",
        action="store_true",
        help="Stop the namespace and verify nothing is left behind",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    name = args.name

    check_link_up(f"{name}-br")
    check_link_up(f"veth-{name}-br")
    check_link_up(f"veth-{name}", namespace=name)
    check_namespace_ruleset(name, args.dns)
    check_resolver(name, args.resolver_root, args.dns)
    if args.host_port is not None:
        check_host_ruleset(name, args.host_port)
    if args.kill_switch:
        check_kill_switch(name, args.bridge_address, args.external)
    if args.teardown:
        check_teardown(name, args.resolver_root)

    print(f"vpn-netns validation of '{name}' succeeded")


if __name__ == "__main__":
    try:
        main()
    except ValidationError as exc:
        print(f"[validate_netns] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
