"""Network identity: MAC persistence, IP mode, bridge/VLAN and host interfaces."""

import ipaddress
import json
import logging
import re
import secrets
from typing import Dict, Iterable, List, Optional, Tuple

from quickvm_setup.config import MAC_VENDOR_PREFIX
from quickvm_setup.errors import ExternalCommandFailure, ValidationError
from quickvm_setup.host_shell import HostShell
from quickvm_setup.models import NetworkMode, NetworkPlan, ProvisioningState
from quickvm_setup.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

CIDR_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}/\d{1,2}$")
BRIDGE_TYPES = {"bridge", "OVSBridge"}
STATIC_EXAMPLE = "--ip-address 192.168.1.100/24 --gateway 192.168.1.1"


def generate_mac(prefix: str = MAC_VENDOR_PREFIX) -> str:
    """Vendor prefix plus three random octets."""
    return prefix + "".join(f":{b:02x}" for b in secrets.token_bytes(3))


def get_or_create_mac(state: ProvisioningState, prefix: str = MAC_VENDOR_PREFIX) -> Tuple[str, bool]:
    """Return ``(mac, generated)``. Persisting a generated MAC is the caller's job."""
    if state.valid_mac:
        return state.valid_mac, False
    return generate_mac(prefix), True


def validate_network_mode(ip: Optional[str], gateway: Optional[str], bridge: str = "vmbr0", vlan_id: Optional[int] = None) -> NetworkPlan:
    """Both of ip/gateway means STATIC, neither means DHCP, anything else is an error."""
    ip = (ip or "").strip()
    gateway = (gateway or "").strip()

    if ip and not gateway:
        raise ValidationError(
            "IP address provided but gateway is missing",
            remediation=f"Static IP needs both values, e.g. {STATIC_EXAMPLE}",
        )
    if gateway and not ip:
        raise ValidationError(
            "Gateway provided but IP address is missing",
            remediation=f"Static IP needs both values, e.g. {STATIC_EXAMPLE}",
        )
    if not ip:
        return NetworkPlan(bridge=bridge, mode=NetworkMode.DHCP, vlan_id=vlan_id)

    if not CIDR_PATTERN.match(ip):
        raise ValidationError(
            f"Invalid IP address format: {ip}",
            remediation="IP address must be in CIDR format (e.g., 192.168.1.100/24)",
        )
    try:
        iface = ipaddress.IPv4Interface(ip)
    except ValueError:
        raise ValidationError(f"Invalid IP address: {ip}", remediation="Use a valid IPv4 CIDR such as 192.168.1.100/24")
    try:
        gw = ipaddress.IPv4Address(gateway)
    except ValueError:
        raise ValidationError(f"Invalid gateway address: {gateway}", remediation="Use a plain IPv4 address such as 192.168.1.1")
    if gw not in iface.network:
        logger.warning(f"⚠️  Gateway {gateway} is outside {iface.network}; make sure it is reachable")

    return NetworkPlan(bridge=bridge, mode=NetworkMode.STATIC, vlan_id=vlan_id, static_ip=ip, gateway=gateway)


def validate_vlan(vlan_id: Optional[int]) -> Optional[int]:
    if vlan_id is None:
        return None
    if not 1 <= vlan_id <= 4094:
        raise ValidationError(f"VLAN ID must be between 1 and 4094, got {vlan_id}", remediation="Pass --vlan <1-4094>")
    return vlan_id


def plan_interface_addresses(names: Iterable[str], host_interfaces: Dict[str, List[str]]) -> Dict[str, str]:
    """Map each requested host interface to its first IPv4 address.

    All invalid names are reported together, with the usable alternatives.
    """
    plan: Dict[str, str] = {}
    invalid: List[str] = []
    for name in names:
        addresses = host_interfaces.get(name)
        if addresses is None:
            invalid.append(f"{name} (no such interface)")
        elif not addresses:
            invalid.append(f"{name} (no IPv4 address)")
        else:
            plan[name] = addresses[0]

    if invalid:
        valid = sorted(n for n, addrs in host_interfaces.items() if addrs and n != "lo")
        raise ValidationError(
            "Invalid port-forwarding interfaces: " + ", ".join(invalid),
            remediation="Valid interfaces on this host: " + (", ".join(valid) or "none"),
        )
    return plan


class NetworkPlanner:
    """Validates network choices against the host's actual configuration."""

    def __init__(self, client: ProxmoxClient, node: str, shell: HostShell):
        self.client = client
        self.node = node
        self.shell = shell

    def validate_bridge(self, bridge: str) -> None:
        networks = self.client.list_networks(self.node)
        bridges = sorted(n["iface"] for n in networks if n.get("type") in BRIDGE_TYPES)
        if bridge not in bridges:
            raise ValidationError(
                f"Bridge '{bridge}' not found on node {self.node}",
                remediation=f"Use --bridge with one of: {', '.join(bridges) or 'none'}",
            )
        for net in networks:
            if net.get("iface") == bridge and net.get("active") in (0, "0"):
                logger.warning(f"⚠️  Bridge {bridge} exists but is not active")

    def host_interfaces(self) -> Dict[str, List[str]]:
        """Host NICs and their IPv4 addresses, from ``ip -j``."""
        result = self.shell.run(["ip", "-j", "-4", "addr", "show"])
        try:
            entries = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise ExternalCommandFailure(f"Unexpected output from 'ip -j addr': {e}", command="ip -j -4 addr show")
        interfaces: Dict[str, List[str]] = {}
        for entry in entries:
            name = entry.get("ifname")
            if not name:
                continue
            interfaces[name] = [
                a["local"] for a in entry.get("addr_info", []) if a.get("family") == "inet" and a.get("local")
            ]
        return interfaces

    def plan(
        self,
        ip: Optional[str],
        gateway: Optional[str],
        bridge: str,
        vlan_id: Optional[int],
        check_host: bool = True,
    ) -> NetworkPlan:
        network = validate_network_mode(ip, gateway, bridge=bridge, vlan_id=validate_vlan(vlan_id))
        if check_host:
            self.validate_bridge(bridge)
        logger.info(f"Network: {network.describe()} on {bridge}" + (f" (VLAN {vlan_id})" if vlan_id else ""))
        return network

    def plan_interfaces(self, names: Iterable[str], check_host: bool = True) -> Dict[str, str]:
        names = list(names)
        if not names:
            return {}
        if not check_host:
            logger.warning("⚠️  Skipping interface validation; addresses will be resolved by the port-forward helper")
            return {name: "" for name in names}
        return plan_interface_addresses(names, self.host_interfaces())
