#!/usr/bin/env python3
"""
src/quickvm_setup/workload_manager.py

Lifecycle of the managed container and everything that runs inside it:
creation, bind mounts, network readiness, packages, the provider's
environment file and its Podman Quadlet unit.
"""

import logging
import textwrap
import time
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import requests
import urllib3

from quickvm_setup.config import (
    CERTS_DIR,
    CONFIG_DIR,
    DATA_DIR,
    NAMESERVERS,
    NETWORK_SETTLE_SECONDS,
    NETWORK_WAIT_ATTEMPTS,
    NETWORK_WAIT_INTERVAL,
    QUADLET_FILE,
    SERVICE_CHECK_ATTEMPTS,
    SERVICE_CHECK_INTERVAL,
    SERVICE_CONFIG_FILE,
    SERVICE_NAME,
)
from quickvm_setup.errors import ExternalCommandFailure, WorkloadTimeoutError
from quickvm_setup.host_shell import HostShell
from quickvm_setup.models import ProvisioningPlan
from quickvm_setup.proxmox_api import ProxmoxClient
from quickvm_setup.state_store import merge_env, parse_env, render_env

logger = logging.getLogger(__name__)

ESSENTIAL_CONFIG_KEYS = {"API_KEY", "PORT", "MAC"}

DEFAULT_SERVICE_SETTINGS: List[Tuple[str, str]] = [
    ("ENABLE_TLS", "true"),
    ("ENVIRONMENT", "production"),
    ("WORKERS", "4"),
    ("TLS_GENERATE_SELF_SIGNED", "true"),
    ("TLS_CERT_SUBJECT", f"/C=US/ST=IL/L=Chicago/O=QuickVM/CN={SERVICE_NAME}"),
]

PACKAGES = ["podman", "curl", "firewalld"]
CA_BUNDLE = "/etc/ssl/certs/ca-certificates.crt"
AUTO_UPDATE_TIMER = "podman-auto-update.timer"
CONNECTIVITY_TARGET = "8.8.8.8"


def build_service_config(
    existing: Optional[Dict[str, str]], api_key: str, port: int, mac_address: str
) -> Tuple["OrderedDict[str, str]", bool]:
    """Return ``(record, preserved)`` for the provider's environment file.

    A file carrying settings beyond the essential keys is treated as operator
    configuration: it is merged key-by-key and only the essential keys are
    converged. Anything else is replaced with the full default set.
    """
    essentials = {"API_KEY": api_key, "PORT": str(port), "MAC": mac_address}
    if existing and set(existing) - ESSENTIAL_CONFIG_KEYS:
        return merge_env(existing, essentials), True

    record: "OrderedDict[str, str]" = OrderedDict()
    record["API_KEY"] = api_key
    for key, value in DEFAULT_SERVICE_SETTINGS:
        record[key] = value
    record["PORT"] = str(port)
    record["MAC"] = mac_address
    return record, False


def render_quadlet(image: str, port: int, auto_update: Optional[bool] = None) -> str:
    """Podman Quadlet unit for the provider container."""
    auto_update_line = "" if auto_update is False else "AutoUpdate=registry\n"
    return (
        textwrap.dedent(
            f"""\
            [Unit]
            Description=QuickVM Provider
            After=network-online.target
            Wants=network-online.target

            [Container]
            Image={image}
            ContainerName={SERVICE_NAME}
            PublishPort={port}:{port}
            Volume={CA_BUNDLE}:{CA_BUNDLE}:ro
            Volume={DATA_DIR}:{DATA_DIR}:Z
            Volume={CERTS_DIR}:/app/certs:Z
            EnvironmentFile={SERVICE_CONFIG_FILE}
            """
        )
        + auto_update_line
        + textwrap.dedent(
            """\

            [Service]
            Restart=always
            RestartSec=10

            [Install]
            WantedBy=multi-user.target
            """
        )
    )


class WorkloadManager:
    """Operations on the managed container, through the platform API and ``pct exec``."""

    def __init__(self, client: ProxmoxClient, shell: HostShell, node: str):
        self.client = client
        self.shell = shell
        self.node = node
        self.unit = f"{SERVICE_NAME}.service"

    def exec(self, vmid: int, *args: str, input: Optional[str] = None, check: bool = True) -> str:
        return self.shell.pct_exec(vmid, list(args), input=input, check=check).stdout

    # === CONTAINER LIFECYCLE ===

    def submit_create(self, plan: ProvisioningPlan) -> str:
        """Ask the platform to create the container; returns the task id without waiting."""
        workload = plan.workload
        logger.info(
            f"Creating LXC container {workload.id} ({workload.name}) with {plan.network.describe()}, "
            f"MAC {plan.mac_address}..."
        )
        return self.client.create_container(
            self.node,
            vmid=workload.id,
            ostemplate=workload.ostemplate,
            hostname=workload.name,
            memory=workload.memory_mb,
            cores=workload.cpu_cores,
            rootfs=workload.rootfs,
            net0=plan.network.to_net0(plan.mac_address),
            nameserver=" ".join(NAMESERVERS),
            onboot=1,
            unprivileged=1,
            features="nesting=1",
        )

    def wait_for_create(self, vmid: int, upid: str) -> None:
        self.client.wait_for_task(self.node, upid)
        logger.info(f"✅ Container {vmid} created")

    def attach_bind_mounts(self, vmid: int) -> None:
        self.client.set_container_config(
            self.node,
            vmid,
            mp0=f"{DATA_DIR},mp={DATA_DIR}",
            mp1=f"{CONFIG_DIR},mp={CONFIG_DIR}",
        )
        logger.info(f"✅ Bind mounts {DATA_DIR} and {CONFIG_DIR} configured")

    def start(self, vmid: int) -> None:
        logger.info(f"Starting container {vmid}...")
        upid = self.client.start_container(self.node, vmid)
        self.client.wait_for_task(self.node, upid)

    def wait_for_network(
        self,
        vmid: int,
        skip_check: bool = False,
        attempts: int = NETWORK_WAIT_ATTEMPTS,
        interval: float = NETWORK_WAIT_INTERVAL,
        settle: float = NETWORK_SETTLE_SECONDS,
    ) -> None:
        """Poll connectivity from inside the container with a fixed bound."""
        logger.info("Waiting for container to be ready...")
        time.sleep(settle)
        if skip_check:
            logger.warning("⚠️  Skipping container network check")
            return

        for attempt in range(1, attempts + 1):
            result = self.shell.pct_exec(vmid, ["ping", "-c", "1", "-W", "2", CONNECTIVITY_TARGET], check=False)
            if result.ok:
                logger.info(f"✅ Container network ready (attempt {attempt})")
                return
            logger.debug(f"Network not ready (attempt {attempt}/{attempts})")
            time.sleep(interval)

        diagnostics = self.diagnostics(vmid)
        logger.error(f"❌ Container network not ready after {attempts} attempts\n{diagnostics}")
        raise WorkloadTimeoutError(
            f"Container {vmid} network not ready after {attempts} attempts",
            remediation="Check bridge/VLAN/DHCP settings, or re-run with --skip-network-check",
        )

    def diagnostics(self, vmid: int) -> str:
        """Collect status, config and addressing for an error report."""
        sections = [
            ("pct status", ["pct", "status", str(vmid)]),
            ("pct config", ["pct", "config", str(vmid)]),
            ("ip addr", ["pct", "exec", str(vmid), "--", "ip", "addr"]),
            ("ip route", ["pct", "exec", str(vmid), "--", "ip", "route"]),
        ]
        lines = []
        for title, args in sections:
            try:
                result = self.shell.run(args, check=False, timeout=30)
                lines.append(f"--- {title} ---\n{(result.stdout or result.stderr).strip()}")
            except ExternalCommandFailure as e:
                lines.append(f"--- {title} ---\n(unavailable: {e})")
        return "\n".join(lines)

    def stop(self, vmid: int) -> None:
        if self.client.container_status(self.node, vmid) == "running":
            logger.info(f"Stopping container {vmid}...")
            upid = self.client.stop_container(self.node, vmid)
            self.client.wait_for_task(self.node, upid)

    def destroy(self, vmid: int) -> None:
        self.stop(vmid)
        logger.info(f"Destroying container {vmid}...")
        upid = self.client.destroy_container(self.node, vmid)
        self.client.wait_for_task(self.node, upid)
        logger.info(f"✅ Container {vmid} destroyed")

    def address(self, vmid: int) -> Optional[str]:
        result = self.shell.pct_exec(vmid, ["ip", "-4", "-o", "addr", "show", "dev", "eth0"], check=False)
        for line in result.stdout.splitlines():
            fields = line.split()
            if "inet" in fields:
                return fields[fields.index("inet") + 1].split("/")[0]
        return None

    # === INSIDE THE CONTAINER ===

    def install_packages(self, vmid: int) -> None:
        logger.info("Updating system and installing packages...")
        self.exec(vmid, "dnf", "update", "-y")
        self.exec(vmid, "dnf", "install", "-y", "--setopt=install_weak_deps=False", *PACKAGES)
        self.exec(vmid, "systemctl", "enable", "--now", "firewalld")
        logger.info("✅ Packages installed and firewalld enabled")

    def open_port(self, vmid: int, port: int) -> None:
        self.exec(vmid, "firewall-cmd", "--permanent", f"--add-port={port}/tcp")
        self.exec(vmid, "firewall-cmd", "--reload")
        logger.info(f"✅ Container firewall: port {port}/tcp open")

    def read_service_config(self, vmid: int) -> Optional["OrderedDict[str, str]"]:
        result = self.shell.pct_exec(vmid, ["cat", SERVICE_CONFIG_FILE], check=False)
        if not result.ok:
            return None
        return parse_env(result.stdout)

    def write_service_config(self, vmid: int, plan: ProvisioningPlan) -> bool:
        """Write or merge the provider environment file. Returns True if existing settings were preserved."""
        existing = self.read_service_config(vmid)
        record, preserved = build_service_config(existing, plan.api_key, plan.port, plan.mac_address)

        self.exec(vmid, "mkdir", "-p", CONFIG_DIR)
        if preserved:
            logger.info("Existing environment file with full configuration found, preserving user configuration...")
            self.exec(vmid, "cp", SERVICE_CONFIG_FILE, f"{SERVICE_CONFIG_FILE}.backup")
        elif existing is not None:
            logger.info("Replacing minimal configuration with full default configuration...")
        else:
            logger.info("Creating new environment file with default configuration...")

        self.exec(vmid, "sh", "-c", f"umask 077 && cat > {SERVICE_CONFIG_FILE}", input=render_env(record))
        self.exec(vmid, "chmod", "600", SERVICE_CONFIG_FILE)
        logger.info(f"✅ Environment file {SERVICE_CONFIG_FILE} written for port {plan.port}")
        return preserved

    def install_service_unit(self, vmid: int, plan: ProvisioningPlan) -> None:
        quadlet = render_quadlet(plan.image_reference, plan.port, plan.auto_update)
        self.exec(vmid, "mkdir", "-p", "/etc/containers/systemd")
        self.exec(vmid, "sh", "-c", f"cat > {QUADLET_FILE}", input=quadlet)
        self.exec(vmid, "systemctl", "daemon-reload")
        logger.info(f"✅ Quadlet service {QUADLET_FILE} installed ({plan.image_reference})")

    def apply_auto_update(self, vmid: int, policy: Optional[bool]) -> None:
        """Toggle the image auto-update timer; absent policy leaves it alone."""
        if policy is None:
            return
        action = ["enable", "--now"] if policy else ["disable", "--now"]
        try:
            self.exec(vmid, "systemctl", *action, AUTO_UPDATE_TIMER)
            logger.info(f"✅ Auto-update {'enabled' if policy else 'disabled'} ({AUTO_UPDATE_TIMER})")
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Could not change auto-update policy: {e}")

    def start_service(self, vmid: int) -> None:
        logger.info(f"Starting {self.unit}...")
        self.exec(vmid, "systemctl", "start", self.unit)

    def verify_service(
        self, vmid: int, attempts: int = SERVICE_CHECK_ATTEMPTS, interval: float = SERVICE_CHECK_INTERVAL
    ) -> None:
        for _ in range(attempts):
            time.sleep(interval)
            result = self.shell.pct_exec(vmid, ["systemctl", "is-active", "--quiet", self.unit], check=False)
            if result.ok:
                logger.info(f"✅ {self.unit} is running")
                return

        status = self.shell.pct_exec(vmid, ["systemctl", "status", self.unit, "--no-pager"], check=False)
        journal = self.shell.pct_exec(vmid, ["journalctl", "-u", self.unit, "--no-pager", "-n", "20"], check=False)
        logger.error(f"❌ {self.unit} failed to start\n{status.stdout}\n{journal.stdout}")
        raise ExternalCommandFailure(
            f"Service {self.unit} is not active",
            command=f"systemctl is-active {self.unit}",
            remediation=f"Inspect with: pct exec {vmid} -- journalctl -u {self.unit} -n 50",
        )

    def recent_logs(self, vmid: int, lines: int = 10) -> Optional[str]:
        try:
            return self.exec(vmid, "podman", "logs", SERVICE_NAME, "--tail", str(lines))
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Container logs not available yet: {e}")
            return None

    def probe_health(self, address: str, port: int, timeout: int = 5) -> bool:
        """HTTPS health endpoint check; the provider uses a self-signed certificate."""
        url = f"https://{address}:{port}/health"
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        try:
            response = requests.get(url, verify=False, timeout=timeout)
        except requests.RequestException as e:
            logger.warning(f"⚠️  Health check {url} failed: {e}")
            return False
        if response.status_code != 200:
            logger.warning(f"⚠️  Health check {url} returned HTTP {response.status_code}")
            return False
        logger.info(f"✅ Health check {url} passed")
        return True
