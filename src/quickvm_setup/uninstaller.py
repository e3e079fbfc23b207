"""Removal of the provider container and its host-side network exposure.

Host directories, the state file and downloaded templates are kept so a
later reinstall comes back with the same MAC address and API key. Commands
for the shared resources (API user, storage definition, templates) are
printed for the operator, never executed.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import typer
from rich.console import Console

from quickvm_setup.config import (
    CONFIG_DIR,
    DATA_DIR,
    DEFAULT_PORT,
    GROUP_NAME,
    OS_FAMILY,
    ROLE_NAME,
    SERVICE_NAME,
    SNIPPETS_STORAGE,
    STATE_FILE,
    TOKEN_ID,
    ProvisioningConfig,
)
from quickvm_setup.errors import ExternalCommandFailure
from quickvm_setup.firewall import FirewallReconciler, PortForwardHelper, firewall_marker
from quickvm_setup.host_shell import HostShell
from quickvm_setup.models import FirewallScope
from quickvm_setup.proxmox_api import ProxmoxClient
from quickvm_setup.resource_allocator import ResourceAllocator
from quickvm_setup.state_store import StateStore
from quickvm_setup.workload_manager import WorkloadManager

logger = logging.getLogger(__name__)


@dataclass
class UninstallReport:
    removed: List[int] = field(default_factory=list)
    storage: Optional[str] = None
    template: Optional[str] = None
    cleanup_commands: List[str] = field(default_factory=list)


def _rootfs_storage(container_config: dict) -> Optional[str]:
    """``local-lvm:vm-100-disk-0,size=8G`` -> ``local-lvm``."""
    rootfs = str(container_config.get("rootfs", ""))
    volume = rootfs.split(",", 1)[0]
    return volume.split(":", 1)[0] if ":" in volume else None


class Uninstaller:
    """Confirmation-gated inverse of the provisioning pipeline."""

    def __init__(
        self,
        config: ProvisioningConfig,
        client: ProxmoxClient,
        shell: HostShell,
        console: Optional[Console] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        state_store: Optional[StateStore] = None,
    ):
        self.config = config
        self.client = client
        self.shell = shell
        self.console = console or Console()
        self.confirm = confirm or (lambda prompt: typer.confirm(prompt, default=False))
        self.state_store = state_store or StateStore(shell)

    def _detect_template(self, allocator: ResourceAllocator, storage: Optional[str]) -> Optional[str]:
        for candidate in filter(None, (storage, "local")):
            try:
                template = allocator.latest_downloaded_template(candidate, OS_FAMILY)
            except ExternalCommandFailure as e:
                logger.debug(f"Template lookup on {candidate} failed: {e}")
                continue
            if template:
                return f"{candidate}:vztmpl/{template}"
        return None

    def cleanup_commands(self, storage: Optional[str], template: Optional[str]) -> List[str]:
        user = self.config.full_username
        template_cmd = f"pveam remove {template}" if template else f"pveam remove <storage>:vztmpl/<{OS_FAMILY}-template>"
        return [
            f"rm -rf {DATA_DIR}",
            f"rm -rf {CONFIG_DIR}  # also deletes {STATE_FILE} (MAC and API key)",
            template_cmd,
            f"pvesm remove {SNIPPETS_STORAGE}",
            f"pveum user token remove {user} {TOKEN_ID}",
            f"pveum acl delete / --users {user} --roles {ROLE_NAME}",
            f"pveum user delete {user}",
            f"pveum role delete {ROLE_NAME}",
            f"pveum group delete {GROUP_NAME}",
        ]

    def run(self, assume_yes: bool = False) -> Optional[UninstallReport]:
        """Remove every container with the canonical name. Returns None if the operator declined."""
        self.console.print(f"⚠️  This will remove all {SERVICE_NAME} containers on this host.")
        if not assume_yes and not self.confirm("Are you sure you want to continue?"):
            self.console.print("Uninstall cancelled.")
            return None

        node = self.client.node_name()
        report = UninstallReport()
        vmids = self.client.find_containers_by_name(node, SERVICE_NAME)
        allocator = ResourceAllocator(self.client, node, self.shell)
        workloads = WorkloadManager(self.client, self.shell, node)
        firewall = FirewallReconciler(self.client, node, self.shell)

        if not vmids:
            logger.info(f"No {SERVICE_NAME} containers found")
        for vmid in vmids:
            logger.info(f"Found container {vmid}, removing...")
            try:
                report.storage = report.storage or _rootfs_storage(self.client.container_config(node, vmid))
            except ExternalCommandFailure as e:
                logger.warning(f"⚠️  Could not read configuration of container {vmid}: {e}")
            report.template = report.template or self._detect_template(allocator, report.storage)
            workloads.destroy(vmid)
            firewall.remove_workload_file(vmid)
            report.removed.append(vmid)

        # Host-side exposure is removed even when no container is left, so a
        # half-finished earlier uninstall still converges
        port = self.state_store.load().port or DEFAULT_PORT
        firewall.teardown(firewall_marker(SERVICE_NAME, port), FirewallScope.NODE)
        PortForwardHelper(self.shell, SERVICE_NAME).remove()

        report.cleanup_commands = self.cleanup_commands(report.storage, report.template)
        self.print_report(report)
        return report

    def print_report(self, report: UninstallReport) -> None:
        c = self.console
        if report.removed:
            c.print(f"✅ Removed container(s): {', '.join(map(str, report.removed))}")
        if report.storage:
            c.print(f"Detected container storage: {report.storage}")
        c.print("\n[bold]Data, configuration and templates were kept.[/bold]")
        c.print(f"Reinstalling reuses the MAC address and API key stored in {STATE_FILE}.\n")
        c.print("To remove everything else manually, run:")
        for command in report.cleanup_commands:
            c.print(f"  {command}", markup=False, highlight=False)
