from dataclasses import replace
from pathlib import Path

import pytest

from vpn_netns.config import PortMapping
from vpn_netns.errors import CommandError, TeardownError, ValidationError
from vpn_netns.orchestrator import NamespaceOrchestrator
from vpn_netns.state import inspect_namespace
from vpn_netns.teardown import TeardownController


def bring_up(backend, definition, resolver_root: Path) -> None:
    NamespaceOrchestrator(backend, resolver_root=resolver_root, sleep=lambda _: None).up(
        definition
    )


def test_down_removes_everything(backend, definition, tmp_path: Path):
    resolver_root = tmp_path / "netns"
    bring_up(backend, replace(definition, port_mappings=(PortMapping(9091, 9091),)), resolver_root)

    report = TeardownController(backend, resolver_root=resolver_root).down("wg")

    assert report.removed == [
        "host table inet vpn-wg-fwd",
        "namespace wg",
        "bridge wg-br",
        f"resolver directory {resolver_root / 'wg'}",
    ]
    assert backend.namespaces == set()
    assert backend.links == {}
    assert backend.tables == {}
    assert not (resolver_root / "wg").exists()
    assert inspect_namespace(backend, "wg", resolver_root).is_absent


def test_down_twice_is_noop(backend, definition, tmp_path: Path):
    resolver_root = tmp_path / "netns"
    bring_up(backend, definition, resolver_root)
    controller = TeardownController(backend, resolver_root=resolver_root)

    first = controller.down("wg")
    calls = len(backend.calls)
    second = controller.down("wg")

    assert not first.was_noop
    assert second.was_noop
    assert len(backend.calls) == calls


def test_down_on_unknown_name_is_noop(backend, tmp_path: Path):
    report = TeardownController(backend, resolver_root=tmp_path).down("never")

    assert report.removed == []
    assert backend.calls == []


def test_down_removes_namespace_table_first(backend, definition, tmp_path: Path):
    bring_up(backend, definition, tmp_path)

    TeardownController(backend, resolver_root=tmp_path).down("wg")

    methods = backend.method_names()
    assert methods.index("delete_table") < methods.index("delete_namespace")


def test_down_removes_stray_host_tunnel(backend, tmp_path: Path):
    # up failed between creating the tunnel and moving it.
    backend.create_namespace("wg")
    backend.create_link("wg0", "wireguard")
    backend.calls.clear()

    report = TeardownController(backend, resolver_root=tmp_path).down("wg")

    assert report.removed == ["namespace wg", "tunnel interface wg0"]
    assert backend.links == {}


def test_namespace_table_failure_is_best_effort(backend, definition, tmp_path: Path):
    bring_up(backend, definition, tmp_path)
    backend.failures["delete_table"] = CommandError(["nft"], 1, "busy")

    report = TeardownController(backend, resolver_root=tmp_path).down("wg")

    assert "namespace wg" in report.removed
    assert backend.namespaces == set()


def test_failures_are_collected_and_raised(backend, definition, tmp_path: Path):
    resolver_root = tmp_path / "netns"
    bring_up(backend, definition, resolver_root)
    backend.failures["delete_namespace"] = CommandError(["ip", "netns", "del", "wg"], 1, "EBUSY")

    with pytest.raises(TeardownError) as excinfo:
        TeardownController(backend, resolver_root=resolver_root).down("wg")

    assert excinfo.value.exit_code == 1
    assert len(excinfo.value.failures) == 1
    assert excinfo.value.failures[0].startswith("namespace wg")
    # Later steps still ran.
    assert ("wg-br", None) not in backend.links
    assert not (resolver_root / "wg").exists()


def test_invalid_name_touches_nothing(backend, tmp_path: Path):
    with pytest.raises(ValidationError):
        TeardownController(backend, resolver_root=tmp_path).down("../etc")

    assert backend.calls == []


def test_inspect_partial_state(backend, tmp_path: Path):
    backend.create_namespace("wg")
    backend.create_link("wg-br", "bridge")

    state = inspect_namespace(backend, "wg", tmp_path)

    assert state.as_dict() == {
        "name": "wg",
        "namespace": True,
        "bridge": True,
        "veth": False,
        "namespace_table": False,
        "host_table": False,
        "resolver_dir": False,
    }
    assert not state.is_absent
