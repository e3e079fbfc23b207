"""Shared test fixtures for quickvm_setup tests."""

from typing import Dict, List, Optional, Sequence, Tuple
from unittest import mock

import pytest

from quickvm_setup.config import ProvisioningConfig
from quickvm_setup.host_shell import CommandResult, HostShell
from quickvm_setup.proxmox_api import ProxmoxClient
from quickvm_setup.state_store import StateStore

FEDORA_OLD = "fedora-41-default_20241118_amd64.tar.xz"
FEDORA_NEW = "fedora-42-default_20250428_amd64.tar.xz"

HOST_INTERFACES_JSON = """[
  {"ifname": "lo", "addr_info": [{"family": "inet", "local": "127.0.0.1"}]},
  {"ifname": "vmbr0", "addr_info": [{"family": "inet", "local": "192.168.1.10"}]},
  {"ifname": "tailscale0", "addr_info": [{"family": "inet", "local": "100.64.0.7"}]},
  {"ifname": "eno2", "addr_info": []}
]"""


class FakeShell(HostShell):
    """In-memory host: records commands, serves canned output, stores files."""

    def __init__(self):
        self.files: Dict[str, str] = {}
        self.modes: Dict[str, int] = {}
        self.dirs: List[str] = []
        self.commands: List[List[str]] = []
        self.inputs: Dict[Tuple[str, ...], str] = {}
        self._responses: List[Tuple[Tuple[str, ...], CommandResult]] = []

    def respond(self, prefix: Sequence[str], stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        """Canned result for any command starting with ``prefix``; latest registration wins."""
        self._responses.insert(0, (tuple(prefix), CommandResult(list(prefix), returncode, stdout, stderr)))

    def ran(self, *prefix: str) -> bool:
        return any(tuple(c[: len(prefix)]) == prefix for c in self.commands)

    def run(self, args, input=None, check=True, timeout=600) -> CommandResult:
        argv = [str(a) for a in args]
        self.commands.append(argv)
        if input is not None:
            self.inputs[tuple(argv)] = input
        result = CommandResult(argv, 0, "", "")
        for prefix, canned in self._responses:
            if tuple(argv[: len(prefix)]) == prefix:
                result = CommandResult(argv, canned.returncode, canned.stdout, canned.stderr)
                break
        return self._check(result, check)

    def read_file(self, path: str) -> Optional[str]:
        return self.files.get(path)

    def write_file(self, path, content, mode=0o600, owner=None) -> None:
        self.files[path] = content
        self.modes[path] = mode

    def remove_file(self, path: str) -> bool:
        return self.files.pop(path, None) is not None

    def make_dirs(self, path, mode=0o755, owner=None) -> None:
        self.dirs.append(path)


class FakeFirewall:
    """Positional rule lists per scope, behaving like the platform's rule API."""

    def __init__(self):
        self.rules: Dict[Optional[int], List[Dict]] = {}
        self.enabled: List[int] = []

    def _scope(self, vmid: Optional[int]) -> List[Dict]:
        return self.rules.setdefault(vmid, [])

    def list(self, node, vmid=None) -> List[Dict]:
        return [dict(rule, pos=i) for i, rule in enumerate(self._scope(vmid))]

    def add(self, node, params, vmid=None) -> None:
        # New rules are inserted at the top, as the platform does
        self._scope(vmid).insert(0, dict(params))

    def delete(self, node, pos, vmid=None) -> None:
        del self._scope(vmid)[pos]

    def enable(self, node, vmid) -> None:
        self.enabled.append(vmid)

    def with_marker(self, marker: str, vmid: Optional[int] = None) -> List[Dict]:
        return [r for r in self._scope(vmid) if r.get("comment") == marker]


@pytest.fixture(autouse=True)
def no_sleep():
    """Polling loops never actually wait in tests."""
    with mock.patch("quickvm_setup.workload_manager.time.sleep"), mock.patch(
        "quickvm_setup.proxmox_api.time.sleep"
    ):
        yield


@pytest.fixture
def mock_proxmox():
    """Mock proxmoxer API object behind ProxmoxClient."""
    with mock.patch("quickvm_setup.proxmox_api.ProxmoxAPI") as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.cluster.status.get.return_value = [
            {"type": "cluster", "name": "homelab"},
            {"type": "node", "name": "pve", "local": 1},
            {"type": "node", "name": "still-fawn", "local": 0},
        ]
        proxmox.nodes.get.return_value = [{"node": "pve"}, {"node": "still-fawn"}]
        proxmox.nodes.return_value.lxc.get.return_value = []
        proxmox.nodes.return_value.qemu.get.return_value = []

        yield proxmox


@pytest.fixture
def fake_shell():
    shell = FakeShell()
    shell.respond(["ip", "-j", "-4", "addr", "show"], stdout=HOST_INTERFACES_JSON)
    return shell


@pytest.fixture
def fake_firewall():
    return FakeFirewall()


@pytest.fixture
def fake_client(fake_firewall):
    """ProxmoxClient double describing a single node with two guests."""
    client = mock.create_autospec(ProxmoxClient, instance=True)
    client.node_name.return_value = "pve"
    client.cluster_vmids.return_value = [100, 101]
    client.node_vmids.return_value = [100, 101]
    client.find_containers_by_name.return_value = []
    client.list_networks.return_value = [
        {"iface": "vmbr0", "type": "bridge", "active": 1},
        {"iface": "eno1", "type": "eth", "active": 1},
    ]
    client.storage_status.return_value = [
        {"storage": "local", "type": "dir", "content": "vztmpl,iso,backup", "active": 1, "enabled": 1},
        {"storage": "local-lvm", "type": "lvmthin", "content": "rootdir,images", "active": 1, "enabled": 1},
        {"storage": "nfs-backup", "type": "nfs", "content": "rootdir,backup", "active": 0, "enabled": 1},
    ]
    client.storage_ids.return_value = ["local", "local-lvm", "nfs-backup"]
    client.storage_content.return_value = []
    client.available_templates.return_value = [
        {"section": "system", "template": FEDORA_OLD},
        {"section": "system", "template": FEDORA_NEW},
        {"section": "system", "template": "debian-12-standard_12.7-1_amd64.tar.zst"},
        {"section": "turnkeylinux", "template": "fedora-turnkey_99.0-1_amd64.tar.gz"},
    ]
    client.download_template.return_value = "UPID:pve:download"
    client.create_container.return_value = "UPID:pve:create"
    client.start_container.return_value = "UPID:pve:start"
    client.stop_container.return_value = "UPID:pve:stop"
    client.destroy_container.return_value = "UPID:pve:destroy"
    client.container_status.return_value = "running"
    client.container_config.return_value = {"rootfs": "local-lvm:vm-102-disk-0,size=8G"}
    client.list_roles.return_value = []
    client.list_groups.return_value = []
    client.list_users.return_value = []
    client.list_tokens.return_value = []
    client.create_token.return_value = {
        "full-tokenid": "quickvm@pve!quickvm",
        "value": "0b5c8a2e-7f3d-4e1a-9c6b-2d4f8e0a1b3c",
    }
    client.firewall_rules.side_effect = fake_firewall.list
    client.add_firewall_rule.side_effect = fake_firewall.add
    client.delete_firewall_rule.side_effect = fake_firewall.delete
    client.enable_firewall.side_effect = fake_firewall.enable
    return client


@pytest.fixture
def state_store(fake_shell):
    return StateStore(fake_shell, owner=None)


@pytest.fixture
def base_config():
    return ProvisioningConfig()
