#!/usr/bin/env python3
"""
src/quickvm_setup/orchestrator.py

Two-phase provisioning of the singleton provider container.

    plan  - read-only: validates input, resolves node, template, storage,
            instance id, MAC, API key and network into a ProvisioningPlan
    apply - executes the plan step by step inside a cleanup scope that
            destroys only what this run created (or, in debug mode, leaves
            it in place and prints diagnostics)
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from rich.console import Console
from rich.table import Table

from quickvm_setup.config import (
    CERTS_DIR,
    CONFIG_DIR,
    DATA_DIR,
    DEFAULT_PORT,
    ID_MAP_OWNER,
    OS_FAMILY,
    SERVICE_CONFIG_FILE,
    SERVICE_NAME,
    SNIPPETS_STORAGE,
    STATE_FILE,
    ProvisioningConfig,
)
from quickvm_setup.credential_manager import CredentialManager, materialize_api_key
from quickvm_setup.errors import ConflictError, ExternalCommandFailure
from quickvm_setup.firewall import FirewallReconciler, PortForwardHelper, firewall_marker
from quickvm_setup.host_shell import HostShell
from quickvm_setup.models import (
    STATE_INTERFACES,
    STATE_VLAN,
    ApiCredential,
    FirewallRule,
    FirewallScope,
    ManagedWorkload,
    NetworkMode,
    ProvisioningPlan,
    RuleChange,
)
from quickvm_setup.network_planner import NetworkPlanner, get_or_create_mac, validate_network_mode, validate_vlan
from quickvm_setup.proxmox_api import ProxmoxClient
from quickvm_setup.resource_allocator import CONTAINER_CONTENT, ResourceAllocator
from quickvm_setup.state_store import StateStore, parse_env
from quickvm_setup.workload_manager import WorkloadManager

logger = logging.getLogger(__name__)


@dataclass
class RunScope:
    """Resources created by the current run, for cleanup on failure."""

    created_vmid: Optional[int] = None
    node_rule_marker: Optional[str] = None
    port_forward_installed: bool = False


@dataclass
class ProvisioningResult:
    plan: ProvisioningPlan
    credential: Optional[ApiCredential] = None
    address: Optional[str] = None
    config_preserved: bool = False
    healthy: bool = False
    firewall: Dict[str, RuleChange] = field(default_factory=dict)


class ProvisioningOrchestrator:
    """Sequences planning and applying; owns the failure and cleanup policy."""

    def __init__(
        self,
        config: ProvisioningConfig,
        client: ProxmoxClient,
        shell: HostShell,
        console: Optional[Console] = None,
        state_store: Optional[StateStore] = None,
    ):
        self.config = config
        self.client = client
        self.shell = shell
        self.console = console or Console()
        self.state_store = state_store or StateStore(shell)
        self._node: Optional[str] = None

    @property
    def node(self) -> str:
        if self._node is None:
            self._node = self.client.node_name()
            logger.info(f"Provisioning on node {self._node}")
        return self._node

    def allocator(self) -> ResourceAllocator:
        return ResourceAllocator(self.client, self.node, self.shell)

    def workloads(self) -> WorkloadManager:
        return WorkloadManager(self.client, self.shell, self.node)

    def firewall(self) -> FirewallReconciler:
        return FirewallReconciler(self.client, self.node, self.shell)

    # === PLAN ===

    def guard_singleton(self) -> None:
        """Refuse to provision while a container with the canonical name exists."""
        existing = self.client.find_containers_by_name(self.node, SERVICE_NAME)
        if existing:
            ids = ", ".join(map(str, existing))
            raise ConflictError(
                f"A {SERVICE_NAME} container already exists on this host (ID: {ids}); "
                f"only one is allowed per host",
                remediation="Keep using the existing container, or remove it first with: quickvm-setup --uninstall",
            )
        logger.info(f"✅ No existing {SERVICE_NAME} containers found")

    def _deployed_config(self) -> Dict[str, str]:
        """The provider config already on the host (bind-mounted into any previous container)."""
        text = self.shell.read_file(SERVICE_CONFIG_FILE)
        return dict(parse_env(text)) if text else {}

    def plan(self) -> ProvisioningPlan:
        cfg = self.config

        # Pure input validation first: no platform calls for malformed input
        validate_network_mode(cfg.ip_address, cfg.gateway, bridge=cfg.bridge)
        validate_vlan(cfg.vlan_id or None)

        allocator = self.allocator()
        template = allocator.resolve_template(OS_FAMILY)
        self.guard_singleton()

        storage = allocator.resolve_storage(cfg.storage, CONTAINER_CONTENT, purpose="container storage")
        template_storage = allocator.resolve_template_storage(cfg.template_storage, storage)
        vmid = allocator.allocate_instance_id(cfg.container_id)

        state = self.state_store.load()
        mac, mac_generated = get_or_create_mac(state)
        if mac_generated:
            logger.info(f"Generated new MAC address: {mac}")
        else:
            logger.info(f"Using existing MAC address: {mac}")

        deployed = self._deployed_config()
        api_key, key_generated = materialize_api_key(deployed.get("API_KEY") or state.api_key, cfg.api_key)

        deployed_port = deployed.get("PORT", "")
        port = cfg.port or (int(deployed_port) if deployed_port.isdigit() else None) or state.port or DEFAULT_PORT
        # Not given: keep the previous run's choice. NO_VLAN or an empty list: drop it.
        vlan_id = state.vlan_id if cfg.vlan_id is None else (cfg.vlan_id or None)
        interfaces = state.interfaces if cfg.interfaces is None else cfg.interfaces

        planner = NetworkPlanner(self.client, self.node, self.shell)
        check_host = not cfg.skip_network_check
        network = planner.plan(cfg.ip_address, cfg.gateway, cfg.bridge, vlan_id, check_host=check_host)
        interface_addresses = planner.plan_interfaces(interfaces, check_host=check_host)

        return ProvisioningPlan(
            node=self.node,
            workload=ManagedWorkload(
                id=vmid,
                name=SERVICE_NAME,
                storage_pool=storage,
                template_storage_pool=template_storage,
                template_ref=template,
                memory_mb=cfg.memory_mb,
                cpu_cores=cfg.cores,
                rootfs_gb=cfg.rootfs_gb,
            ),
            network=network,
            mac_address=mac,
            mac_generated=mac_generated,
            api_key=api_key,
            api_key_generated=key_generated,
            port=port,
            image_reference=cfg.image_reference,
            auto_update=cfg.auto_update,
            interface_addresses=interface_addresses,
            firewall_source=cfg.firewall_source,
        )

    # === APPLY ===

    @contextmanager
    def cleanup_scope(self) -> Iterator[RunScope]:
        scope = RunScope()
        try:
            yield scope
        except BaseException:
            if self.config.debug:
                self._print_debug_help(scope)
            else:
                self._rollback(scope)
            raise

    def _rollback(self, scope: RunScope) -> None:
        if scope.created_vmid is None:
            logger.error("❌ Provisioning failed before a container was created; nothing to clean up")
            return
        logger.error(f"❌ Provisioning failed. Cleaning up container {scope.created_vmid}...")
        vmid = scope.created_vmid
        if scope.port_forward_installed:
            PortForwardHelper(self.shell, SERVICE_NAME).remove()
        if scope.node_rule_marker:
            self.firewall().teardown(scope.node_rule_marker, FirewallScope.NODE)
        try:
            self.workloads().destroy(vmid)
            self.firewall().remove_workload_file(vmid)
        except ExternalCommandFailure as e:
            logger.error(f"❌ Could not remove container {vmid}: {e}")
            self.console.print(f"Remove it manually with: pct stop {vmid} && pct destroy {vmid}")

    def _print_debug_help(self, scope: RunScope) -> None:
        vmid = scope.created_vmid if scope.created_vmid is not None else "unknown"
        unit = f"{SERVICE_NAME}.service"
        logger.error("❌ Provisioning failed. Debug mode enabled - leaving container for debugging...")
        self.console.print(
            "\n[bold]=== DEBUG INFORMATION ===[/bold]\n"
            f"Container ID: {vmid}\n\n"
            "To debug the container:\n"
            f"  pct enter {vmid}\n\n"
            "Useful debugging commands inside the container:\n"
            f"  systemctl status {unit}\n"
            f"  journalctl -u {unit} -f\n"
            "  podman ps -a\n"
            f"  podman logs {SERVICE_NAME}\n"
            f"  cat /etc/containers/systemd/{SERVICE_NAME}.container\n"
            f"  cat {SERVICE_CONFIG_FILE}\n\n"
            "Manual cleanup when debugging is complete:\n"
            f"  pct stop {vmid}\n"
            f"  pct destroy {vmid}\n"
        )

    def create_host_directories(self) -> None:
        for path in (DATA_DIR, CONFIG_DIR, CERTS_DIR):
            self.shell.make_dirs(path, mode=0o755, owner=ID_MAP_OWNER)
        if SNIPPETS_STORAGE in self.client.storage_ids():
            logger.info(f"Storage '{SNIPPETS_STORAGE}' already exists, skipping creation")
        else:
            self.client.add_dir_storage(SNIPPETS_STORAGE, path=DATA_DIR, content="snippets")
            logger.info(f"✅ Storage '{SNIPPETS_STORAGE}' created for {DATA_DIR}")
        logger.info("✅ Host directories created and configured")

    def open_access(self, plan: ProvisioningPlan, scope: RunScope) -> Dict[str, RuleChange]:
        """Workload and node firewall rules plus the optional port-forward helper."""
        vmid = plan.workload.id
        marker = firewall_marker(SERVICE_NAME, plan.port)
        firewall = self.firewall()
        changes = {
            "workload": firewall.upsert(
                FirewallRule(marker, plan.port, FirewallScope.WORKLOAD, source=plan.firewall_source), vmid=vmid
            ),
            "node": firewall.upsert(FirewallRule(marker, plan.port, FirewallScope.NODE, source=plan.firewall_source)),
        }
        if changes["node"] is RuleChange.CREATED:
            scope.node_rule_marker = marker

        helper = PortForwardHelper(self.shell, SERVICE_NAME)
        if plan.interfaces:
            scope.port_forward_installed = helper.install(vmid, plan.port, plan.interfaces, marker)
        elif helper.remove():
            logger.info("Port forwarding no longer configured; removed stale helper")
        return changes

    def apply(self, plan: ProvisioningPlan) -> ProvisioningResult:
        cfg = self.config
        vmid = plan.workload.id
        workloads = self.workloads()
        allocator = self.allocator()
        result = ProvisioningResult(plan=plan)

        with self.cleanup_scope() as scope:
            if cfg.skip_api_user:
                logger.info("Skipping API user setup (--skip-api-user flag provided)")
            else:
                result.credential = CredentialManager(self.client, cfg.full_username).setup()

            allocator.ensure_template(plan.workload.template_storage_pool, plan.workload.template_ref)
            self.create_host_directories()

            # Record identity before creating anything that uses it
            self.state_store.update(
                mac_address=plan.mac_address,
                api_key=plan.api_key,
                port=plan.port,
                vlan_id=plan.network.vlan_id,
                interfaces=plan.interfaces or None,
                forget=[
                    key
                    for key, value in ((STATE_VLAN, plan.network.vlan_id), (STATE_INTERFACES, plan.interfaces))
                    if not value
                ],
            )

            allocator.ensure_id_free(vmid)
            upid = workloads.submit_create(plan)
            # The guest exists from here on even if the create task never reports back
            scope.created_vmid = vmid
            workloads.wait_for_create(vmid, upid)

            workloads.attach_bind_mounts(vmid)
            workloads.start(vmid)
            workloads.wait_for_network(vmid, skip_check=cfg.skip_network_check)
            workloads.install_packages(vmid)
            workloads.open_port(vmid, plan.port)
            result.firewall = self.open_access(plan, scope)
            result.config_preserved = workloads.write_service_config(vmid, plan)
            workloads.install_service_unit(vmid, plan)
            workloads.apply_auto_update(vmid, plan.auto_update)
            workloads.start_service(vmid)
            workloads.verify_service(vmid)

        result.address = workloads.address(vmid)
        if result.address:
            result.healthy = workloads.probe_health(result.address, plan.port)
        logs = workloads.recent_logs(vmid)
        if logs:
            self.console.print("\n[bold]Recent container logs:[/bold]")
            self.console.print(logs.rstrip(), markup=False, highlight=False)
        return result

    def run(self) -> Optional[ProvisioningResult]:
        plan = self.plan()
        self.print_plan(plan)
        if self.config.dry_run:
            self.console.print("🔍 DRY RUN MODE - No changes were made")
            return None
        result = self.apply(plan)
        self.print_summary(result)
        return result

    # === REPORTING ===

    def print_plan(self, plan: ProvisioningPlan) -> None:
        w = plan.workload
        table = Table(title="Provisioning Plan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Node", plan.node)
        table.add_row("Container ID", str(w.id))
        table.add_row("Template", w.ostemplate)
        table.add_row("Storage", w.storage_pool)
        table.add_row("Memory", f"{w.memory_mb} MB")
        table.add_row("CPU Cores", str(w.cpu_cores))
        table.add_row("Root FS Size", f"{w.rootfs_gb} GB")
        table.add_row("Network", plan.network.describe())
        table.add_row("Bridge", plan.network.bridge + (f" (VLAN {plan.network.vlan_id})" if plan.network.vlan_id else ""))
        table.add_row("MAC", plan.mac_address + (" (new)" if plan.mac_generated else " (persisted)"))
        table.add_row("Port", str(plan.port))
        table.add_row("Image", plan.image_reference)
        if plan.interface_addresses:
            table.add_row(
                "Port forwarding",
                ", ".join(f"{name} ({addr or '?'})" for name, addr in plan.interface_addresses.items()),
            )
        auto = {None: "unchanged", True: "enabled", False: "disabled"}[plan.auto_update]
        table.add_row("Auto-update", auto)
        self.console.print(table)

    def print_summary(self, result: ProvisioningResult) -> None:
        plan = result.plan
        vmid = plan.workload.id
        address = result.address or "<container-ip>"
        unit = f"{SERVICE_NAME}.service"
        c = self.console

        c.print("\n[bold green]=== Setup Complete ===[/bold green]\n")
        c.print(f"Container ID: {vmid}")
        c.print(f"Container Name: {SERVICE_NAME}")
        c.print(f"Container IP: {address}")
        c.print(f"Service URL: https://{address}:{plan.port}\n")
        c.print("Test the service health endpoint:")
        c.print(f"  curl -s https://{address}:{plan.port}/health --insecure\n")
        c.print("To check service status:")
        c.print(f"  pct exec {vmid} -- systemctl status {unit}\n")
        c.print("To check service logs:")
        c.print(f"  pct exec {vmid} -- journalctl -u {unit} -f\n")
        c.print("To check container logs:")
        c.print(f"  pct exec {vmid} -- podman logs {SERVICE_NAME} -f\n")
        c.print("To enter the container:")
        c.print(f"  pct enter {vmid}\n")
        c.print("Host directories created:")
        c.print(f"  {DATA_DIR} (mounted to {DATA_DIR} in container)")
        c.print(f"  {CONFIG_DIR} (mounted to {CONFIG_DIR} in container)\n")

        if plan.api_key_generated:
            c.print(f"Generated API Key: {plan.api_key}", markup=False)
            c.print("Save this key securely - it will be required for API access.\n")
        else:
            c.print(f"Using API Key: {plan.api_key}\n", markup=False)

        self._print_credentials(result.credential)

        c.print(f"Container MAC address: {plan.mac_address}")
        c.print(f"  (Stored in {STATE_FILE})\n")
        if plan.network.mode is NetworkMode.DHCP:
            c.print("[bold]DHCP CONFIGURATION:[/bold]")
            c.print(f"The container uses DHCP with a persistent MAC address ({plan.mac_address}).")
            c.print(f"For a permanent IP, reserve {address} for MAC {plan.mac_address} on your DHCP server.\n")

        failed = [scope for scope, change in result.firewall.items() if change is RuleChange.FAILED]
        if failed:
            c.print(f"⚠️  Firewall rules could not be applied for: {', '.join(failed)} (see warnings above)")
        if result.address and not result.healthy:
            c.print("⚠️  The health endpoint did not answer yet; the service may still be starting.")

    def _print_credentials(self, credential: Optional[ApiCredential]) -> None:
        c = self.console
        cfg = self.config
        if cfg.skip_api_user:
            c.print("API User Setup: Skipped")
            c.print("  You will need to create the API user manually for VM management functionality.\n")
            return

        c.print("[bold]=== PROXMOX API CREDENTIALS ===[/bold]")
        c.print(f"  Username: {cfg.full_username}")
        if credential is None:
            c.print("  API Token: Failed to retrieve token information")
            c.print(f"  Check manually with: pveum user token list {cfg.full_username}\n")
            return
        c.print(f"  API Token ID: {credential.token_id}", markup=False)
        if credential.secret_known:
            c.print(f"  API Token Secret: {credential.secret}", markup=False)
            c.print("\n[bold]IMPORTANT:[/bold] This API token secret is only shown once. Save it securely!\n")
        else:
            token_name = credential.token_id.split("!")[-1]
            c.print("  API Token Secret: (existing token - secret not available)")
            c.print("If you no longer have the secret, rotate the token with:")
            c.print(f"  pveum user token remove {cfg.full_username} {token_name}")
            c.print(f"  pveum user token add {cfg.full_username} {token_name} --privsep 0\n")
