"""Tests for proxmox_api module."""

from unittest import mock

import pytest
from proxmoxer.core import ResourceException

from quickvm_setup.config import ProvisioningConfig
from quickvm_setup.errors import ExternalCommandFailure, ValidationError, WorkloadTimeoutError
from quickvm_setup.proxmox_api import ProxmoxClient


def test_local_backend():
    with mock.patch("quickvm_setup.proxmox_api.ProxmoxAPI") as mock_api:
        client = ProxmoxClient()

    assert client.backend == "local"
    mock_api.assert_called_once_with(backend="local", service="PVE")


def test_token_backend():
    with mock.patch("quickvm_setup.proxmox_api.ProxmoxAPI") as mock_api:
        client = ProxmoxClient(host="pve.maas", api_token="root@pam!ci=abc-123")

    assert client.backend == "https"
    mock_api.assert_called_once_with(
        "pve.maas", user="root@pam", token_name="ci", token_value="abc-123", verify_ssl=False
    )


def test_ssh_backend():
    with mock.patch("quickvm_setup.proxmox_api.ProxmoxAPI") as mock_api:
        client = ProxmoxClient(host="pve.maas", ssh_user="admin", ssh_key_path="/keys/id_ed25519")

    assert client.backend == "ssh_paramiko"
    mock_api.assert_called_once_with(
        "pve.maas", user="admin", backend="ssh_paramiko", private_key_file="/keys/id_ed25519", service="PVE"
    )


def test_malformed_token():
    with mock.patch("quickvm_setup.proxmox_api.ProxmoxAPI"):
        with pytest.raises(ValidationError, match="API_TOKEN"):
            ProxmoxClient(host="pve.maas", api_token="not-a-token")


def test_from_config(mock_proxmox):
    config = ProvisioningConfig(pve_host="pve.maas", api_token="root@pam!ci=abc")
    assert ProxmoxClient.from_config(config).backend == "https"


class TestProxmoxClient:
    """Endpoint wrappers over an injected proxmoxer object."""

    @pytest.fixture
    def api(self):
        return mock.MagicMock()

    @pytest.fixture
    def client(self, api):
        return ProxmoxClient(api=api)

    def test_resource_exception_converted(self, client, api):
        api.nodes.return_value.lxc.get.side_effect = ResourceException(500, "Internal Error", "boom")

        with pytest.raises(ExternalCommandFailure, match="GET /nodes/pve/lxc"):
            client.list_containers("pve")

    def test_transport_error_converted(self, client, api):
        api.cluster.resources.get.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(ExternalCommandFailure, match="unreachable"):
            client.cluster_vmids()

    def test_node_name_from_cluster_status(self, client, api):
        api.cluster.status.get.return_value = [
            {"type": "cluster", "name": "homelab"},
            {"type": "node", "name": "still-fawn", "local": 0},
            {"type": "node", "name": "pve", "local": 1},
        ]
        assert client.node_name() == "pve"
        assert client.node_name() == "pve"
        api.cluster.status.get.assert_called_once()

    def test_node_name_single_node_fallback(self, client, api):
        api.cluster.status.get.side_effect = ResourceException(501, "Not Implemented", "")
        api.nodes.get.return_value = [{"node": "solo"}]

        assert client.node_name() == "solo"

    def test_node_name_undeterminable(self, client, api):
        api.cluster.status.get.return_value = []
        api.nodes.get.return_value = [{"node": "a"}, {"node": "b"}]

        with pytest.raises(ExternalCommandFailure, match="Could not determine"):
            client.node_name()

    def test_cluster_vmids(self, client, api):
        api.cluster.resources.get.return_value = [{"vmid": 100}, {"vmid": "101"}, {"storage": "local"}]

        assert client.cluster_vmids() == [100, 101]
        api.cluster.resources.get.assert_called_once_with(type="vm")

    def test_node_vmids_combines_guests(self, client, api):
        api.nodes.return_value.lxc.get.return_value = [{"vmid": "100"}]
        api.nodes.return_value.qemu.get.return_value = [{"vmid": "101"}]

        assert sorted(client.node_vmids("pve")) == [100, 101]

    def test_find_containers_by_name(self, client, api):
        api.nodes.return_value.lxc.get.return_value = [
            {"vmid": "107", "name": "quickvm-provider"},
            {"vmid": "103", "name": "quickvm-provider"},
            {"vmid": "104", "name": "frigate"},
        ]
        assert client.find_containers_by_name("pve", "quickvm-provider") == [103, 107]

    def test_destroy_purges(self, client, api):
        client.destroy_container("pve", 102)
        api.nodes.return_value.lxc.return_value.delete.assert_called_once_with(purge=1)

    def test_create_token_without_privilege_separation(self, client, api):
        client.create_token("quickvm@pve", "quickvm", comment="c")
        api.access.users.return_value.token.return_value.post.assert_called_once_with(privsep=0, comment="c")

    def test_workload_firewall_endpoint(self, client, api):
        client.add_firewall_rule("pve", {"type": "in"}, vmid=102)

        api.nodes.return_value.lxc.assert_called_with(102)
        api.nodes.return_value.lxc.return_value.firewall.rules.post.assert_called_once_with(type="in")

    def test_node_firewall_endpoint(self, client, api):
        client.delete_firewall_rule("pve", 3)
        api.nodes.return_value.firewall.rules.assert_called_with(3)


class TestWaitForTask:
    """Task polling."""

    @pytest.fixture
    def api(self):
        return mock.MagicMock()

    @pytest.fixture
    def client(self, api):
        return ProxmoxClient(api=api)

    def test_non_task_result_returns_immediately(self, client, api):
        client.wait_for_task("pve", None)
        client.wait_for_task("pve", "")
        api.nodes.return_value.tasks.assert_not_called()

    def test_success(self, client, api):
        status = api.nodes.return_value.tasks.return_value.status.get
        status.side_effect = [{"status": "running"}, {"status": "stopped", "exitstatus": "OK"}]

        client.wait_for_task("pve", "UPID:pve:0001")

        assert status.call_count == 2

    def test_failed_task(self, client, api):
        api.nodes.return_value.tasks.return_value.status.get.return_value = {
            "status": "stopped",
            "exitstatus": "storage 'local-lvm' does not exist",
        }
        with pytest.raises(ExternalCommandFailure, match="does not exist"):
            client.wait_for_task("pve", "UPID:pve:0002")

    def test_timeout(self, client, api):
        api.nodes.return_value.tasks.return_value.status.get.return_value = {"status": "running"}

        with mock.patch("quickvm_setup.proxmox_api.time.time", side_effect=[0, 0, 5, 11]):
            with pytest.raises(WorkloadTimeoutError, match="did not finish within 10s"):
                client.wait_for_task("pve", "UPID:pve:0003", timeout=10)
