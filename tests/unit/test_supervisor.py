import fcntl
import os
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from threading import Event

import pytest

from vpn_netns.config import NamespaceDefinition
from vpn_netns.errors import (
    OperationCancelled,
    ReachabilityError,
    ResourceConflictError,
    ValidationError,
)
from vpn_netns_agent import NamespaceStart, NamespaceStop, NamespaceSupervisor
from vpn_netns_agent.config import AgentConfig
from vpn_netns_agent.locking import namespace_lock


class RecordingLock:
    def __init__(self):
        self.held: list[str] = []
        self.acquired: list[str] = []

    @contextmanager
    def __call__(self, lock_dir: Path, name: str):
        assert name not in self.held
        self.acquired.append(name)
        self.held.append(name)
        try:
            yield lock_dir / f"{name}.lock"
        finally:
            self.held.remove(name)


def build_supervisor(backend, tmp_path: Path, *definitions, stop_event=None):
    config = AgentConfig(
        resolver_root=tmp_path / "netns",
        lock_dir=tmp_path / "locks",
        namespaces={definition.name: definition for definition in definitions},
    )
    lock = RecordingLock()
    supervisor = NamespaceSupervisor(
        config, backend, stop_event=stop_event, sleep=lambda _: None, lock=lock
    )
    return supervisor, lock


def test_start_and_stop(backend, definition, tmp_path: Path):
    supervisor, lock = build_supervisor(backend, tmp_path, definition)

    supervisor.handle(NamespaceStart("wg"))
    assert backend.namespaces == {"wg"}

    supervisor.handle(NamespaceStop("wg"))
    assert backend.namespaces == set()
    assert backend.links == {}
    assert lock.acquired == ["wg", "wg"]


def test_failed_start_tears_down(backend, definition, tmp_path: Path):
    backend.unreachable.add("185.213.154.68")
    supervisor, lock = build_supervisor(backend, tmp_path, definition)

    with pytest.raises(ReachabilityError):
        supervisor.start("wg")

    assert backend.namespaces == set()
    assert backend.links == {}
    # The lock covers the cleanup too.
    assert lock.acquired == ["wg"]


def test_raw_up_leaves_partial_state(backend, definition, tmp_path: Path):
    backend.unreachable.add("185.213.154.68")
    supervisor, _ = build_supervisor(backend, tmp_path, definition)

    with pytest.raises(ReachabilityError):
        supervisor.up("wg")

    assert backend.namespaces == {"wg"}

    supervisor.stop("wg")
    assert backend.namespaces == set()


def test_failed_start_does_not_touch_existing_namespace_of_other_name(
    backend, definition, tmp_path: Path
):
    other = replace(definition, name="wg2")
    supervisor, _ = build_supervisor(backend, tmp_path, definition, other)
    supervisor.start("wg2")
    backend.namespaces.add("wg")

    with pytest.raises(ResourceConflictError):
        supervisor.start("wg")

    assert "wg2" in backend.namespaces
    assert ("wg2-br", None) in backend.links


def test_start_all_is_independent(backend, definition, wg_config: Path, tmp_path: Path):
    broken_config = tmp_path / "broken.conf"
    broken_config.write_text("[Interface]\n[Nope]\n")
    broken = NamespaceDefinition(name="bad", config_file=broken_config)
    second = replace(definition, name="wg2")
    supervisor, _ = build_supervisor(backend, tmp_path, definition, broken, second)

    results = supervisor.start_all()

    assert list(results) == ["wg", "bad", "wg2"]
    assert results["wg"] is None
    assert results["bad"].exit_code == 2
    assert results["wg2"] is None
    assert backend.namespaces == {"wg", "wg2"}

    stopped = supervisor.stop_all()
    assert list(stopped) == ["wg2", "bad", "wg"]
    assert all(error is None for error in stopped.values())
    assert backend.namespaces == set()


def test_unknown_namespace(backend, tmp_path: Path):
    supervisor, lock = build_supervisor(backend, tmp_path)

    with pytest.raises(ValidationError):
        supervisor.start("wg")
    with pytest.raises(ValidationError):
        supervisor.start_all(["wg"])

    assert lock.acquired == []


def test_stop_does_not_need_a_definition(backend, tmp_path: Path):
    supervisor, lock = build_supervisor(backend, tmp_path)
    backend.create_namespace("wg")

    assert supervisor.stop_all(["wg"]) == {"wg": None}
    assert backend.namespaces == set()
    assert lock.acquired == ["wg"]


def test_stop_event_cancels_and_cleans_up(backend, definition, tmp_path: Path):
    stop_event = Event()
    stop_event.set()
    supervisor, _ = build_supervisor(backend, tmp_path, definition, stop_event=stop_event)

    with pytest.raises(OperationCancelled):
        supervisor.start("wg")

    assert backend.namespaces == set()


def test_handle_rejects_unknown_events(backend, tmp_path: Path):
    supervisor, _ = build_supervisor(backend, tmp_path)

    with pytest.raises(TypeError):
        supervisor.handle("start wg")  # type: ignore[arg-type]


def test_namespace_lock_file(tmp_path: Path):
    with namespace_lock(tmp_path / "locks", "wg") as lock_file:
        assert lock_file == tmp_path / "locks" / "wg.lock"
        assert lock_file.read_text().strip().isdigit()

    # Reacquirable once released.
    with namespace_lock(tmp_path / "locks", "wg"):
        pass


def test_namespace_lock_excludes_other_holders(tmp_path: Path):
    with namespace_lock(tmp_path / "locks", "wg") as lock_file:
        fd = os.open(str(lock_file), os.O_WRONLY)
        try:
            with pytest.raises(BlockingIOError):
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        finally:
            os.close(fd)

    fd = os.open(str(lock_file), os.O_WRONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
