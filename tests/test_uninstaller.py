"""Tests for uninstaller module."""

from unittest import mock

import pytest
from rich.console import Console

from conftest import FEDORA_NEW
from quickvm_setup.config import ProvisioningConfig
from quickvm_setup.orchestrator import ProvisioningOrchestrator
from quickvm_setup.uninstaller import Uninstaller

STATE_FILE = "/etc/quickvm/state.env"
MARKER = "quickvm-provider-port-8071"
FORWARD_SCRIPT = "/usr/local/sbin/quickvm-provider-port-forward.sh"


@pytest.fixture
def console():
    return Console(record=True, width=200)


@pytest.fixture
def make_uninstaller(fake_client, fake_shell, state_store, console):
    def _make(confirm=None):
        return Uninstaller(
            ProvisioningConfig(),
            fake_client,
            fake_shell,
            console=console,
            confirm=confirm or (lambda prompt: True),
            state_store=state_store,
        )
    return _make


@pytest.fixture
def templates_on_local(fake_client):
    def content(node, storage, kind):
        if storage == "local":
            return [{"volid": f"local:vztmpl/{FEDORA_NEW}"}]
        return []
    fake_client.storage_content.side_effect = content


class TestUninstaller:
    """Tests for Uninstaller class."""

    def test_declined_confirmation(self, make_uninstaller, fake_client, console):
        assert make_uninstaller(confirm=lambda prompt: False).run() is None

        fake_client.find_containers_by_name.assert_not_called()
        fake_client.destroy_container.assert_not_called()
        assert "Uninstall cancelled" in console.export_text()

    def test_assume_yes_skips_prompt(self, make_uninstaller, fake_client):
        confirm = mock.Mock(return_value=False)

        assert make_uninstaller(confirm=confirm).run(assume_yes=True) is not None
        confirm.assert_not_called()

    def test_removes_workload_and_exposure(self, make_uninstaller, fake_client, fake_shell, fake_firewall,
                                           templates_on_local, console):
        fake_client.find_containers_by_name.return_value = [102]
        fake_firewall.add("pve", {"type": "in", "comment": MARKER, "dport": "8071"})
        fake_shell.files["/etc/pve/firewall/102.fw"] = "[OPTIONS]\n"
        fake_shell.files[FORWARD_SCRIPT] = "#!/bin/bash\n"
        fake_shell.files[STATE_FILE] = "MAC=00:50:56:12:34:56\nPORT=8071\n"

        report = make_uninstaller().run()

        assert report.removed == [102]
        assert report.storage == "local-lvm"
        assert report.template == f"local:vztmpl/{FEDORA_NEW}"
        fake_client.stop_container.assert_called_once_with("pve", 102)
        fake_client.destroy_container.assert_called_once_with("pve", 102)
        assert "/etc/pve/firewall/102.fw" not in fake_shell.files
        assert fake_shell.ran("pve-firewall", "compile")
        assert fake_firewall.with_marker(MARKER) == []
        assert FORWARD_SCRIPT not in fake_shell.files
        # State, data and templates are kept
        assert fake_shell.files[STATE_FILE] == "MAC=00:50:56:12:34:56\nPORT=8071\n"

        output = console.export_text()
        assert f"pveam remove local:vztmpl/{FEDORA_NEW}" in output
        assert "pvesm remove quickvm" in output
        assert "pveum user delete quickvm@pve" in output

    def test_uses_persisted_port_for_node_rule(self, make_uninstaller, fake_shell, fake_firewall):
        fake_shell.files[STATE_FILE] = "PORT=9000\n"
        fake_firewall.add("pve", {"type": "in", "comment": "quickvm-provider-port-9000", "dport": "9000"})

        make_uninstaller().run()

        assert fake_firewall.with_marker("quickvm-provider-port-9000") == []

    def test_nothing_installed(self, make_uninstaller, fake_client, console):
        report = make_uninstaller().run()

        assert report.removed == []
        fake_client.destroy_container.assert_not_called()
        assert "pveam remove <storage>:vztmpl/<fedora-template>" in console.export_text()

    def test_reinstall_keeps_mac_and_api_key(self, make_uninstaller, fake_client, fake_shell, state_store, console):
        orchestrator = ProvisioningOrchestrator(
            ProvisioningConfig(), fake_client, fake_shell, console=console, state_store=state_store
        )
        first = orchestrator.run()

        fake_client.find_containers_by_name.return_value = [first.plan.workload.id]
        make_uninstaller().run()
        fake_client.find_containers_by_name.return_value = []

        second = ProvisioningOrchestrator(
            ProvisioningConfig(), fake_client, fake_shell, console=console, state_store=state_store
        ).run()

        assert second.plan.mac_address == first.plan.mac_address
        assert second.plan.mac_generated is False
        assert second.plan.api_key == first.plan.api_key
        assert fake_client.create_container.call_args.kwargs["net0"].endswith(f"hwaddr={first.plan.mac_address}")
