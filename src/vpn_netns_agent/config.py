"""YAML configuration loader for the vpn-netns agent."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import yaml

from vpn_netns.config import (
    DEFAULT_BRIDGE_ADDRESS,
    DEFAULT_BRIDGE_ADDRESS_V6,
    DEFAULT_NAMESPACE_ADDRESS,
    DEFAULT_NAMESPACE_ADDRESS_V6,
    DEFAULT_RESOLVER_ROOT,
    NamespaceDefinition,
    OpenPort,
    PortMapping,
    Protocol,
)
from vpn_netns.errors import ConfigSourceError, ValidationError
from vpn_netns.orchestrator import ProbePolicy

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/vpn-netns/config.yaml")
DEFAULT_LOCK_DIR = Path("/run/vpn-netns")

# Per-namespace keys that may also be given once under ``defaults``.
_DEFAULTABLE = {
    "ipv6": True,
    "namespace_address": DEFAULT_NAMESPACE_ADDRESS,
    "bridge_address": DEFAULT_BRIDGE_ADDRESS,
    "namespace_address_v6": DEFAULT_NAMESPACE_ADDRESS_V6,
    "bridge_address_v6": DEFAULT_BRIDGE_ADDRESS_V6,
    "accessible_from": [],
}


@dataclass
class AgentConfig:
    resolver_root: Path = DEFAULT_RESOLVER_ROOT
    lock_dir: Path = DEFAULT_LOCK_DIR
    probe: ProbePolicy = field(default_factory=ProbePolicy)
    namespaces: Dict[str, NamespaceDefinition] = field(default_factory=dict)

    def definition(self, name: str) -> NamespaceDefinition:
        try:
            return self.namespaces[name]
        except KeyError:
            raise ValidationError(
                f"namespace '{name}' is not configured", field="namespaces"
            ) from None


def _mapping(value: Any, key: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("must be a mapping", field=key)
    return value


def _list(value: Any, key: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("must be a list", field=key)
    return value


def _path(value: Any, key: str) -> Path:
    if not isinstance(value, (str, Path)) or not str(value):
        raise ValidationError(f"expected a path, got {value!r}", field=key)
    return Path(value)


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"expected an integer, got {value!r}", field=key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"expected an integer, got {value!r}", field=key) from None


def _parse_probe(section: Mapping[str, Any]) -> ProbePolicy:
    attempts = _int(section.get("attempts", 5), "probe.attempts")
    timeout = _int(section.get("timeout", 2), "probe.timeout")
    try:
        interval = float(section.get("interval", 1.0))
    except (TypeError, ValueError):
        raise ValidationError(
            f"expected a number, got {section.get('interval')!r}",
            field="probe.interval",
        ) from None
    if attempts < 1:
        raise ValidationError("must be at least 1", field="probe.attempts")
    if timeout < 1:
        raise ValidationError("must be at least 1", field="probe.timeout")
    if interval < 0:
        raise ValidationError("must not be negative", field="probe.interval")
    return ProbePolicy(attempts=attempts, interval=interval, timeout=timeout)


def _parse_port_mappings(entries: Iterable[Any], key: str) -> List[PortMapping]:
    mappings: List[PortMapping] = []
    for index, entry in enumerate(entries):
        where = f"{key}[{index}]"
        entry = _mapping(entry, where)
        if "from" not in entry or "to" not in entry:
            raise ValidationError("needs 'from' and 'to'", field=where)
        mappings.append(
            PortMapping(
                host_port=_int(entry["from"], f"{where}.from"),
                namespace_port=_int(entry["to"], f"{where}.to"),
                protocol=Protocol.parse(entry.get("protocol", "tcp")),
            )
        )
    return mappings


def _parse_open_ports(entries: Iterable[Any], key: str) -> List[OpenPort]:
    ports: List[OpenPort] = []
    for index, entry in enumerate(entries):
        where = f"{key}[{index}]"
        entry = _mapping(entry, where)
        if "port" not in entry:
            raise ValidationError("needs 'port'", field=where)
        ports.append(
            OpenPort(
                port=_int(entry["port"], f"{where}.port"),
                protocol=Protocol.parse(entry.get("protocol", "tcp")),
            )
        )
    return ports


def _parse_namespace(
    name: str, section: Mapping[str, Any], defaults: Mapping[str, Any]
) -> NamespaceDefinition:
    key = f"namespaces.{name}"
    if "config_file" not in section:
        raise ValidationError("missing 'config_file'", field=key)

    def option(option_name: str) -> Any:
        if option_name in section:
            return section[option_name]
        return defaults.get(option_name, _DEFAULTABLE[option_name])

    accessible_from = [
        str(entry) for entry in _list(option("accessible_from"), f"{key}.accessible_from")
    ]

    return NamespaceDefinition(
        name=str(name),
        config_file=Path(section["config_file"]),
        accessible_from=tuple(accessible_from),
        namespace_address=str(option("namespace_address")),
        bridge_address=str(option("bridge_address")),
        namespace_address_v6=str(option("namespace_address_v6")),
        bridge_address_v6=str(option("bridge_address_v6")),
        port_mappings=tuple(
            _parse_port_mappings(
                _list(section.get("port_mappings"), f"{key}.port_mappings"),
                f"{key}.port_mappings",
            )
        ),
        open_vpn_ports=tuple(
            _parse_open_ports(
                _list(section.get("open_vpn_ports"), f"{key}.open_vpn_ports"),
                f"{key}.open_vpn_ports",
            )
        ),
        ipv6_enabled=bool(option("ipv6")),
    )


def load_config(path: Path) -> AgentConfig:
    try:
        text = Path(path).read_text()
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigSourceError(f"cannot read agent configuration {path}: {exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("agent configuration must be a mapping")

    defaults = _mapping(data.get("defaults"), "defaults")
    unknown = sorted(set(defaults) - set(_DEFAULTABLE))
    if unknown:
        raise ValidationError(f"unsupported keys {unknown}", field="defaults")

    namespaces: Dict[str, NamespaceDefinition] = {}
    for name, section in _mapping(data.get("namespaces"), "namespaces").items():
        namespaces[str(name)] = _parse_namespace(
            str(name), _mapping(section, f"namespaces.{name}"), defaults
        )

    return AgentConfig(
        resolver_root=_path(
            data.get("resolver_root", DEFAULT_RESOLVER_ROOT), "resolver_root"
        ),
        lock_dir=_path(data.get("lock_dir", DEFAULT_LOCK_DIR), "lock_dir"),
        probe=_parse_probe(_mapping(data.get("probe"), "probe")),
        namespaces=namespaces,
    )


def load_paths(path: Path) -> AgentConfig:
    """Read only ``resolver_root`` and ``lock_dir``.

    Teardown and inspection need nothing else, so namespace entries are not
    parsed and a missing or broken file falls back to the default paths.
    """

    try:
        data = yaml.safe_load(Path(path).read_text())
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        LOG.warning(
            "cannot read agent configuration %s, using default paths: %s", path, exc
        )
        data = None
    if not isinstance(data, dict):
        data = {}

    config = AgentConfig()
    for key in ("resolver_root", "lock_dir"):
        if key not in data:
            continue
        try:
            setattr(config, key, _path(data[key], key))
        except ValidationError as exc:
            LOG.warning("%s, using %s", exc, getattr(config, key))
    return config
