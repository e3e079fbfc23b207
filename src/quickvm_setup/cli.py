#!/usr/bin/env python3
"""
QuickVM provider setup for Proxmox VE.

Creates (or removes) the single quickvm-provider LXC container on this host:
    quickvm-setup                      # provision with auto-detected settings
    quickvm-setup --dry-run            # show the plan, change nothing
    quickvm-setup -i 192.168.1.100/24 -g 192.168.1.1
    quickvm-setup --uninstall

Every option can also be set through the environment variable shown in
--help, or a .env file in the working directory; flags win.
"""

import logging
import os
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console

from quickvm_setup.config import (
    DEFAULT_BRIDGE,
    DEFAULT_IMAGE_TAG,
    ProvisioningConfig,
    parse_interfaces,
    parse_tri_state,
    parse_vlan,
)
from quickvm_setup.errors import ProvisioningError
from quickvm_setup.host_shell import HostShell, LocalShell, SSHShell
from quickvm_setup.orchestrator import ProvisioningOrchestrator
from quickvm_setup.proxmox_api import ProxmoxClient
from quickvm_setup.uninstaller import Uninstaller

# Initialize CLI app and console
app = typer.Typer(
    name="quickvm-setup",
    help="Provision the QuickVM provider container on Proxmox VE",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def get_shell(config: ProvisioningConfig) -> HostShell:
    """Local commands on the node itself, SSH when a remote host is configured."""
    if config.pve_host:
        return SSHShell(config.pve_host, username=config.ssh_user, key_filename=config.ssh_key_path)
    return LocalShell()


def report_error(error: ProvisioningError) -> None:
    console.print(f"❌ {error}", markup=False, soft_wrap=True)
    if error.remediation:
        console.print(f"   {error.remediation}", markup=False, soft_wrap=True)


@app.command()
def setup(
    container_id: Optional[int] = typer.Option(None, "--container-id", "-c", envvar="CONTAINER_ID", help="Container ID (default: next free ID)"),
    memory: int = typer.Option(2048, "--memory", "-m", envvar="MEMORY", help="Memory in MB"),
    cores: int = typer.Option(2, "--cpu", "--cores", envvar="CORES", help="Number of CPU cores"),
    disk: int = typer.Option(8, "--disk", "-d", envvar="ROOTFS_SIZE", help="Root filesystem size in GB"),
    api_key: Optional[str] = typer.Option(None, "--api-key", "-k", envvar="API_KEY", help="API key (default: keep existing or generate)"),
    bridge: str = typer.Option(DEFAULT_BRIDGE, "--bridge", "-b", envvar="BRIDGE", help="Network bridge"),
    vlan: Optional[str] = typer.Option(None, "--vlan", envvar="VLAN", help="VLAN tag (1-4094), or \"none\" to drop a previous tag"),
    port: Optional[int] = typer.Option(None, "--port", "-p", envvar="HOST_PORT", help="Service port (default: previous port or 8071)"),
    storage: Optional[str] = typer.Option(None, "--storage", "-s", envvar="STORAGE", help="Container storage (default: auto-detect)"),
    template_storage: Optional[str] = typer.Option(None, "--template-storage", envvar="TEMPLATE_STORAGE", help="Template storage (default: auto-detect)"),
    ip_address: Optional[str] = typer.Option(None, "--ip-address", "-i", envvar="IP", help="Static IP in CIDR form (default: DHCP)"),
    gateway: Optional[str] = typer.Option(None, "--gateway", "-g", envvar="GATEWAY", help="Gateway for the static IP"),
    tag: str = typer.Option(DEFAULT_IMAGE_TAG, "--tag", "-t", envvar="TAG", help="Provider image tag"),
    interfaces: Optional[str] = typer.Option(None, "--interfaces", envvar="INTERFACES", help="Comma-separated host interfaces to forward the port from, or \"none\" to stop forwarding"),
    firewall_source: str = typer.Option("any", "--firewall-source", envvar="FIREWALL_SOURCE", help="Source address/CIDR allowed through the firewall"),
    skip_api_user: bool = typer.Option(False, "--skip-api-user", envvar="SKIP_API_USER", help="Do not create the Proxmox API user and token"),
    skip_network_check: bool = typer.Option(False, "--skip-network-check", envvar="SKIP_NETWORK_CHECK", help="Skip bridge and connectivity checks"),
    auto_update: Optional[str] = typer.Option(None, "--auto-update", envvar="AUTO_UPDATE", help="true/false: enable or disable image auto-update (default: unchanged)"),
    host: Optional[str] = typer.Option(None, "--host", envvar="PVE_HOST", help="Remote Proxmox host (default: this node)"),
    uninstall: bool = typer.Option(False, "--uninstall", help="Remove the provider container"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation when uninstalling"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the provisioning plan without changing anything"),
    debug: bool = typer.Option(False, "--debug", envvar="DEBUG", help="Debug logging; keep the container on failure"),
) -> None:
    """
    Provision or remove the quickvm-provider container.

    Runs are idempotent for identity: the MAC address, API key and port of a
    previous installation are reused. Only one provider container may exist
    per host.
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)

    shell: Optional[HostShell] = None
    try:
        config = ProvisioningConfig(
            container_id=container_id,
            memory_mb=memory,
            cores=cores,
            rootfs_gb=disk,
            api_key=api_key,
            bridge=bridge,
            vlan_id=parse_vlan(vlan),
            port=port,
            storage=storage,
            template_storage=template_storage,
            ip_address=ip_address,
            gateway=gateway,
            image_tag=tag,
            interfaces=parse_interfaces(interfaces),
            firewall_source=firewall_source,
            skip_api_user=skip_api_user,
            skip_network_check=skip_network_check,
            auto_update=parse_tri_state(auto_update),
            debug=debug,
            dry_run=dry_run,
            pve_host=host,
            api_token=os.getenv("API_TOKEN") or None,
            ssh_user=os.getenv("SSH_USER", "root"),
            ssh_key_path=os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"),
        )
        client = ProxmoxClient.from_config(config)
        shell = get_shell(config)

        if uninstall:
            report = Uninstaller(config, client, shell, console=console).run(assume_yes=yes)
            if report is None:
                raise typer.Exit(1)
            return

        ProvisioningOrchestrator(config, client, shell, console=console).run()
    except ProvisioningError as e:
        report_error(e)
        raise typer.Exit(1)
    except typer.Abort:
        console.print("❌ Aborted")
        raise typer.Exit(1)
    except (typer.Exit, KeyboardInterrupt):
        raise
    except Exception as e:
        logger.debug("Unexpected failure", exc_info=True)
        console.print(f"❌ Unexpected failure: {e}", markup=False, soft_wrap=True)
        raise typer.Exit(1)
    finally:
        if isinstance(shell, SSHShell):
            shell.close()


def main() -> None:
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
