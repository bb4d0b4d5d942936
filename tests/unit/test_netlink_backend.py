import errno
import subprocess

import pytest
from pyroute2.netlink.exceptions import NetlinkError

from vpn_netns.backends import netlink
from vpn_netns.backends.netlink import NetlinkBackend
from vpn_netns.errors import CommandError, ResourceConflictError


class RecordingRunner:
    def __init__(self, returncode: int = 0, stderr: str = ""):
        self.commands: list[tuple] = []
        self.returncode = returncode
        self.stderr = stderr

    def __call__(self, cmd, input=None, **kwargs):
        self.commands.append((list(cmd), input))
        return subprocess.CompletedProcess(cmd, self.returncode, "", self.stderr)


@pytest.fixture
def runner(monkeypatch) -> RecordingRunner:
    recorder = RecordingRunner()
    monkeypatch.setattr(netlink.subprocess, "run", recorder)
    return recorder


def test_ruleset_loaded_from_stdin_inside_namespace(runner):
    NetlinkBackend().load_ruleset("table inet vpn-wg {\n}\n", namespace="wg")

    assert runner.commands == [
        (["ip", "netns", "exec", "wg", "nft", "-f", "-"], "table inet vpn-wg {\n}\n")
    ]


def test_host_table_commands(runner):
    backend = NetlinkBackend()

    assert backend.table_exists("vpn-wg-fwd") is True
    backend.delete_table("vpn-wg-fwd")

    assert [command for command, _ in runner.commands] == [
        ["nft", "list", "table", "inet", "vpn-wg-fwd"],
        ["nft", "delete", "table", "inet", "vpn-wg-fwd"],
    ]


def test_failed_command_raises(runner):
    runner.returncode = 1
    runner.stderr = "Error: No such file or directory\n"

    with pytest.raises(CommandError) as excinfo:
        NetlinkBackend().delete_table("vpn-wg", namespace="wg")

    assert excinfo.value.returncode == 1
    assert excinfo.value.stderr == "Error: No such file or directory"
    assert "ip netns exec wg nft delete table inet vpn-wg" in str(excinfo.value)


def test_probe_uses_single_ping(runner):
    assert NetlinkBackend().probe("2001:db8::1", 2) is True
    assert runner.commands[0][0] == ["ping", "-c", "1", "-W", "2", "--", "2001:db8::1"]


def test_configure_wireguard_passes_file(runner):
    NetlinkBackend().configure_wireguard("wg0", "[Interface]\nPrivateKey = a2V5\n")

    command = runner.commands[0][0]
    assert command[:3] == ["wg", "setconf", "wg0"]
    assert command[3].endswith(".conf")


def test_missing_binary(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(errno.ENOENT, "No such file", cmd[0])

    monkeypatch.setattr(netlink.subprocess, "run", missing)

    with pytest.raises(CommandError) as excinfo:
        NetlinkBackend().load_ruleset("table inet x {\n}\n")

    assert "command not found" in str(excinfo.value)


@pytest.mark.parametrize(
    "code, expected",
    [
        (errno.EEXIST, ResourceConflictError),
        (errno.ENODEV, ResourceConflictError),
        (errno.EPERM, CommandError),
    ],
)
def test_netlink_errors_are_mapped(code: int, expected):
    backend = NetlinkBackend()

    with pytest.raises(expected):
        with backend._request("add bridge link wg-br"):
            raise NetlinkError(code)
