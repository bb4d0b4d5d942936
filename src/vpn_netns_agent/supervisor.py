"""Lifecycle supervisor: ``up`` on start, ``down`` on stop or failed start."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from threading import Event
from typing import Callable, ContextManager, Dict, Iterable, List, Optional

from vpn_netns.backends import NetworkBackend
from vpn_netns.config import validate_definition, validate_name
from vpn_netns.errors import ConfinementError
from vpn_netns.orchestrator import NamespaceOrchestrator, UpResult
from vpn_netns.teardown import TeardownController, TeardownReport

from .config import AgentConfig
from .events import NamespaceStart, NamespaceStop
from .locking import namespace_lock

LOG = logging.getLogger(__name__)

LockFactory = Callable[[Path, str], ContextManager[Path]]


class NamespaceSupervisor:
    """Run ``up``/``down`` for configured namespaces one name at a time.

    Operations on the same name are serialised with a lock file under
    ``config.lock_dir``; the lock is held across a failed ``up`` and the
    ``down`` that follows it so no other invocation observes the half-built
    namespace.
    """

    def __init__(
        self,
        config: AgentConfig,
        backend: NetworkBackend,
        *,
        stop_event: Optional[Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        lock: LockFactory = namespace_lock,
    ) -> None:
        self._config = config
        self._stop_event = stop_event
        self._lock = lock
        self._orchestrator = NamespaceOrchestrator(
            backend,
            resolver_root=config.resolver_root,
            probe_policy=config.probe,
            sleep=sleep,
        )
        self._teardown = TeardownController(backend, resolver_root=config.resolver_root)

    @property
    def config(self) -> AgentConfig:
        return self._config

    def up(self, name: str) -> UpResult:
        """Run ``up`` alone; on failure the caller is expected to run ``stop``."""

        definition = self._config.definition(name)
        validate_definition(definition)
        with self._lock(self._config.lock_dir, name):
            return self._orchestrator.up(definition, self._stop_event)

    def start(self, name: str) -> UpResult:
        definition = self._config.definition(name)
        # Rejected definitions never reach the OS, so there is nothing to clean up.
        validate_definition(definition)
        with self._lock(self._config.lock_dir, name):
            try:
                return self._orchestrator.up(definition, self._stop_event)
            except Exception:
                LOG.warning("%s: start failed, removing partial state", name)
                self._cleanup_after_failure(name)
                raise

    def stop(self, name: str) -> TeardownReport:
        validate_name(name)
        with self._lock(self._config.lock_dir, name):
            return self._teardown.down(name)

    def start_all(
        self, names: Optional[Iterable[str]] = None
    ) -> Dict[str, Optional[ConfinementError]]:
        """Start ``names`` (default: all configured) independently, in order.

        Returns each name mapped to the error that stopped it, or ``None``.
        """

        results: Dict[str, Optional[ConfinementError]] = {}
        for name in self._selected(names):
            try:
                self.start(name)
            except ConfinementError as exc:
                LOG.error("%s: %s", name, exc)
                results[name] = exc
            else:
                results[name] = None
        return results

    def stop_all(
        self, names: Optional[Iterable[str]] = None
    ) -> Dict[str, Optional[ConfinementError]]:
        """Stop ``names`` (default: all configured) in reverse order.

        Explicit names need not be configured; teardown works from the name.
        """

        selected = list(self._config.namespaces) if names is None else list(names)
        results: Dict[str, Optional[ConfinementError]] = {}
        for name in reversed(selected):
            try:
                self.stop(name)
            except ConfinementError as exc:
                LOG.error("%s: %s", name, exc)
                results[name] = exc
            else:
                results[name] = None
        return results

    def handle(self, event: NamespaceStart | NamespaceStop) -> None:
        if isinstance(event, NamespaceStart):
            self.start(event.namespace)
        elif isinstance(event, NamespaceStop):
            self.stop(event.namespace)
        else:
            raise TypeError(f"Unsupported event type: {type(event)!r}")

    def _selected(self, names: Optional[Iterable[str]]) -> List[str]:
        if names is None:
            return list(self._config.namespaces)
        selected = list(names)
        for name in selected:
            self._config.definition(name)
        return selected

    def _cleanup_after_failure(self, name: str) -> None:
        try:
            self._teardown.down(name)
        except ConfinementError as exc:
            # The start failure is what the caller sees; the leftovers are
            # reported here so they are not lost.
            LOG.error("%s: cleanup after failed start incomplete: %s", name, exc)
