#!/usr/bin/env python3
"""Render the nftables rulesets for a configured namespace without applying them."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from vpn_netns.errors import ConfinementError  # noqa: E402
from vpn_netns.nftables import (  # noqa: E402
    generate_host_ruleset,
    generate_namespace_ruleset,
)
from vpn_netns.wgquick import parse_file  # noqa: E402
from vpn_netns_agent.config import load_config  # noqa: E402


LOG = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("name", help="Namespace name from the agent configuration")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("deploy/vpn-netns.yaml"),
        help="Path to the agent configuration file",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Write vpn-<name>.nft (and vpn-<name>-fwd.nft) here instead of stdout",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = load_config(args.config)
        definition = config.definition(args.name)
        parsed = parse_file(definition.config_file)
        namespace_ruleset = generate_namespace_ruleset(definition, parsed.dns_servers)
        host_ruleset = generate_host_ruleset(definition)
    except ConfinementError as exc:
        LOG.error("%s", exc)
        return exc.exit_code

    names = definition.names
    if args.output_dir is None:
        sys.stdout.write(namespace_ruleset)
        if host_ruleset:
            sys.stdout.write("\n" + host_ruleset)
        return 0

    args.output_dir.mkdir(parents=True, exist_ok=True)
    namespace_path = args.output_dir / f"{names.table}.nft"
    namespace_path.write_text(namespace_ruleset)
    LOG.info("Namespace ruleset written to %s", namespace_path)
    if host_ruleset:
        host_path = args.output_dir / f"{names.host_table}.nft"
        host_path.write_text(host_ruleset)
        LOG.info("Host ruleset written to %s", host_path)
    else:
        LOG.info("No port mappings; no host ruleset rendered")
    return 0


if __name__ == "__main__":
    sys.exit(main())
