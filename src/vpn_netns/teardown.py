"""Idempotent removal of everything ``up`` may have created."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Tuple

from .backends.base import NetworkBackend
from .config import DEFAULT_RESOLVER_ROOT, ResourceNames, validate_name
from .errors import ConfinementError, TeardownError

LOG = logging.getLogger(__name__)


@dataclass
class TeardownReport:
    """Resources removed by one ``down`` call, in removal order."""

    name: str
    removed: List[str] = field(default_factory=list)

    @property
    def was_noop(self) -> bool:
        return not self.removed


class TeardownController:
    """Remove the host table, namespace, bridge and resolver directory.

    Every step checks that its resource exists first, so a partially set up
    namespace (or one that is already gone) tears down cleanly.  Failures
    do not stop later steps; they are collected and raised together as a
    :class:`~vpn_netns.errors.TeardownError` once every step has run.
    """

    def __init__(
        self, backend: NetworkBackend, *, resolver_root: Path = DEFAULT_RESOLVER_ROOT
    ) -> None:
        self._backend = backend
        self._resolver_root = Path(resolver_root)

    def down(self, name: str) -> TeardownReport:
        validate_name(name)
        names = ResourceNames.for_namespace(name)
        report = TeardownReport(name=name)
        failures: List[str] = []

        steps: List[Tuple[str, Callable[[], bool], Callable[[], None]]] = [
            (
                f"host table inet {names.host_table}",
                lambda: self._backend.table_exists(names.host_table),
                lambda: self._backend.delete_table(names.host_table),
            ),
            (
                f"namespace {names.namespace}",
                lambda: self._backend.namespace_exists(names.namespace),
                lambda: self._remove_namespace(names),
            ),
            # Left on the host when up failed before moving it.
            (
                f"tunnel interface {names.tunnel}",
                lambda: self._backend.link_exists(names.tunnel),
                lambda: self._backend.delete_link(names.tunnel),
            ),
            (
                f"veth {names.veth_host}",
                lambda: self._backend.link_exists(names.veth_host),
                lambda: self._backend.delete_link(names.veth_host),
            ),
            (
                f"bridge {names.bridge}",
                lambda: self._backend.link_exists(names.bridge),
                lambda: self._backend.delete_link(names.bridge),
            ),
            (
                f"resolver directory {self._resolver_root / name}",
                lambda: (self._resolver_root / name).exists(),
                lambda: shutil.rmtree(self._resolver_root / name),
            ),
        ]

        for description, exists, remove in steps:
            try:
                if not exists():
                    continue
                remove()
            except (ConfinementError, OSError) as exc:
                LOG.error("%s: failed to remove %s: %s", name, description, exc)
                failures.append(f"{description}: {exc}")
                continue
            LOG.info("%s: removed %s", name, description)
            report.removed.append(description)

        if failures:
            raise TeardownError(name, failures)

        if report.was_noop:
            LOG.info("%s: nothing to tear down", name)
        else:
            LOG.info("%s: teardown complete", name)
        return report

    def _remove_namespace(self, names: ResourceNames) -> None:
        # Deleting the namespace destroys the table with it; removing it
        # first only matters to whoever still holds a reference.
        try:
            if self._backend.table_exists(names.table, namespace=names.namespace):
                self._backend.delete_table(names.table, namespace=names.namespace)
        except ConfinementError as exc:
            LOG.warning(
                "%s: could not remove table inet %s: %s", names.namespace, names.table, exc
            )
        self._backend.delete_namespace(names.namespace)
