"""Safe parser for wg-quick configuration files.

The file is treated as untrusted data: it is split into lines and
``Key = Value`` pairs and nothing in it is ever evaluated, sourced or
interpolated into a command line.  wg-quick specific directives are pulled
out into structured fields and the remainder is kept as a config that
``wg setconf`` accepts.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .errors import ConfigSourceError, ParseError, ValidationError

LOG = logging.getLogger(__name__)

INTERFACE_SECTION = "[Interface]"
PEER_SECTION = "[Peer]"
COMMENT_MARKER = "#"

# wg-quick-only keys that must never reach ``wg setconf``.
DROPPED_INTERFACE_KEYS = frozenset(
    {"table", "preup", "postup", "predown", "postdown", "saveconfig"}
)

WG_CONF_FILE = "wg.conf"
ADDRESSES_FILE = "addresses"
DNS_FILE = "dns"
ENDPOINTS_FILE = "endpoints"
MTU_FILE = "mtu"


@dataclass(frozen=True)
class ParsedTunnelConfig:
    """Structured view of a wg-quick file.

    ``stripped_config`` holds the private key; do not log it.
    """

    addresses: Tuple[str, ...]
    dns_servers: Tuple[str, ...]
    endpoints: Tuple[str, ...]
    mtu: Optional[int]
    stripped_config: str
    peer_count: int

    @property
    def nameservers(self) -> Tuple[str, ...]:
        """DNS entries that are IP literals, in configured order."""

        return tuple(entry for entry in self.dns_servers if _is_ip(entry))

    @property
    def search_domains(self) -> Tuple[str, ...]:
        """Non-address DNS entries; wg-quick treats these as search domains."""

        return tuple(entry for entry in self.dns_servers if not _is_ip(entry))


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def parse(data: Union[bytes, str]) -> ParsedTunnelConfig:
    """Parse wg-quick configuration ``data``.

    Raises :class:`ParseError` on structural problems and
    :class:`ValidationError` when a mandatory element is missing.
    """

    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"configuration is not valid UTF-8 ({exc.reason})") from None
    else:
        text = data

    stripped: List[str] = []
    addresses: List[str] = []
    dns_servers: List[str] = []
    endpoints: List[str] = []
    mtu: Optional[int] = None

    section: Optional[str] = None
    seen_interface = False
    peer_count = 0

    # Only "\n" ends a line, as in wg(8); other line breaks stay inside it.
    for line_number, raw_line in enumerate(text.split("\n"), start=1):
        line = raw_line.rstrip("\r").split(COMMENT_MARKER, 1)[0].strip()
        if not line:
            continue

        if line.startswith("["):
            if line == INTERFACE_SECTION:
                if seen_interface:
                    raise ParseError(
                        "multiple [Interface] sections are not allowed",
                        line_number,
                        line,
                    )
                seen_interface = True
                section = INTERFACE_SECTION
            elif line == PEER_SECTION:
                peer_count += 1
                section = PEER_SECTION
            else:
                raise ParseError(
                    "unknown section (expected [Interface] or [Peer])",
                    line_number,
                    line,
                )
            stripped.append(line)
            continue

        if "=" not in line:
            raise ParseError("expected Key = Value", line_number, line)

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            raise ParseError("empty key", line_number, line)
        if section is None:
            raise ParseError("key outside of a section", line_number, line)

        lowered = key.lower()
        if section == INTERFACE_SECTION:
            if lowered == "address":
                for entry in _split_list(value):
                    try:
                        ipaddress.ip_interface(entry)
                    except ValueError:
                        raise ParseError(
                            f"invalid address '{entry}'", line_number, line
                        ) from None
                    addresses.append(entry)
                continue
            if lowered == "dns":
                dns_servers.extend(_split_list(value))
                continue
            if lowered == "mtu":
                mtu = _parse_mtu(value, line_number, line)
                continue
            if lowered in DROPPED_INTERFACE_KEYS:
                continue
        elif lowered == "endpoint":
            endpoints.append(value)

        stripped.append(f"{key} = {value}")

    if not seen_interface:
        raise ValidationError("no [Interface] section found")
    if not addresses:
        raise ValidationError("no Address specified in [Interface]")
    if not dns_servers:
        raise ValidationError(
            "no DNS specified in [Interface]; required for VPN confinement"
        )
    if not peer_count:
        raise ValidationError("no [Peer] sections found")

    return ParsedTunnelConfig(
        addresses=tuple(addresses),
        dns_servers=tuple(dns_servers),
        endpoints=tuple(endpoints),
        mtu=mtu,
        stripped_config="".join(f"{entry}\n" for entry in stripped),
        peer_count=peer_count,
    )


def _parse_mtu(value: str, line_number: int, line: str) -> int:
    if not (value.isascii() and value.isdigit()) or int(value) <= 0:
        raise ParseError("MTU must be a positive integer", line_number, line)
    return int(value)


def parse_file(path: Path) -> ParsedTunnelConfig:
    """Read and parse the wg-quick file at ``path``."""

    path = Path(path)
    if not path.is_file():
        raise ConfigSourceError(f"config file '{path}' does not exist")
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ConfigSourceError(
            f"config file '{path}' is not readable: {exc.strerror}"
        ) from exc

    parsed = parse(data)
    LOG.debug(
        "Parsed %s: %d address(es), %d DNS server(s), %d peer(s)",
        path,
        len(parsed.addresses),
        len(parsed.dns_servers),
        parsed.peer_count,
    )
    return parsed


def _write_lines(path: Path, values: Tuple[str, ...]) -> None:
    path.write_text("".join(f"{value}\n" for value in values))


def write_outputs(parsed: ParsedTunnelConfig, output_dir: Path) -> Path:
    """Materialise ``parsed`` as one file per field under ``output_dir``.

    ``wg.conf`` is created with mode 0600 since it carries the private key.
    The ``mtu`` file only exists when an MTU was configured.
    """

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    wg_conf = output_dir / WG_CONF_FILE
    fd = os.open(wg_conf, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(parsed.stripped_config)

    _write_lines(output_dir / ADDRESSES_FILE, parsed.addresses)
    _write_lines(output_dir / DNS_FILE, parsed.dns_servers)
    _write_lines(output_dir / ENDPOINTS_FILE, parsed.endpoints)

    mtu_path = output_dir / MTU_FILE
    if parsed.mtu is not None:
        mtu_path.write_text(f"{parsed.mtu}\n")
    elif mtu_path.exists():
        mtu_path.unlink()

    return output_dir
