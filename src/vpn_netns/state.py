"""Runtime inspection of the resources a namespace may own."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict

from .backends.base import NetworkBackend
from .config import DEFAULT_RESOLVER_ROOT, ResourceNames


@dataclass(frozen=True)
class RuntimeNamespaceState:
    """What currently exists for one namespace name.

    Never persisted; teardown rebuilds it by asking the kernel.
    """

    name: str
    namespace: bool
    bridge: bool
    veth: bool
    namespace_table: bool
    host_table: bool
    resolver_dir: bool

    @property
    def is_absent(self) -> bool:
        return not any(
            (
                self.namespace,
                self.bridge,
                self.veth,
                self.namespace_table,
                self.host_table,
                self.resolver_dir,
            )
        )

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


def inspect_namespace(
    backend: NetworkBackend,
    name: str,
    resolver_root: Path = DEFAULT_RESOLVER_ROOT,
) -> RuntimeNamespaceState:
    names = ResourceNames.for_namespace(name)
    namespace = backend.namespace_exists(names.namespace)
    return RuntimeNamespaceState(
        name=name,
        namespace=namespace,
        bridge=backend.link_exists(names.bridge),
        veth=backend.link_exists(names.veth_host),
        namespace_table=namespace
        and backend.table_exists(names.table, namespace=names.namespace),
        host_table=backend.table_exists(names.host_table),
        resolver_dir=(Path(resolver_root) / name).exists(),
    )
