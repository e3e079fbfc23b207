"""Data models for the provisioning engine."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

MAC_PATTERN = re.compile(r"^([0-9a-fA-F]{2}:){5}[0-9a-fA-F]{2}$")

# Keys with a fixed meaning in the persisted state record
STATE_MAC = "MAC"
STATE_API_KEY = "API_KEY"
STATE_PORT = "PORT"
STATE_VLAN = "VLAN"
STATE_INTERFACES = "INTERFACES"


def is_valid_mac(value: Optional[str]) -> bool:
    return bool(value) and MAC_PATTERN.match(value) is not None  # type: ignore[arg-type]


@dataclass
class ProvisioningState:
    """Durable identity record for the singleton workload.

    Unknown keys added by the operator are carried in ``extra`` and written
    back untouched.
    """

    mac_address: Optional[str] = None
    api_key: Optional[str] = None
    port: Optional[int] = None
    vlan_id: Optional[int] = None
    interfaces: Tuple[str, ...] = ()
    extra: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "ProvisioningState":
        data = dict(record)
        mac = data.pop(STATE_MAC, "").strip() or None
        api_key = data.pop(STATE_API_KEY, "").strip() or None
        port_raw = data.pop(STATE_PORT, "").strip()
        vlan_raw = data.pop(STATE_VLAN, "").strip()
        interfaces_raw = data.pop(STATE_INTERFACES, "").strip()
        return cls(
            mac_address=mac,
            api_key=api_key,
            port=int(port_raw) if port_raw.isdigit() and 1 <= int(port_raw) <= 65535 else None,
            vlan_id=int(vlan_raw) if vlan_raw.isdigit() else None,
            interfaces=tuple(i.strip() for i in interfaces_raw.split(",") if i.strip()),
            extra=data,
        )

    @property
    def valid_mac(self) -> Optional[str]:
        """The stored MAC if it passes strict colon-hex validation."""
        return self.mac_address if is_valid_mac(self.mac_address) else None


class NetworkMode(Enum):
    DHCP = "dhcp"
    STATIC = "static"


@dataclass(frozen=True)
class NetworkPlan:
    """Resolved network settings for the workload's primary interface."""

    bridge: str
    mode: NetworkMode
    vlan_id: Optional[int] = None
    static_ip: Optional[str] = None
    gateway: Optional[str] = None

    def to_net0(self, mac_address: str) -> str:
        """Render the platform ``net0`` option string."""
        parts = ["name=eth0", f"bridge={self.bridge}"]
        if self.vlan_id is not None:
            parts.append(f"tag={self.vlan_id}")
        if self.mode is NetworkMode.STATIC:
            parts.append(f"ip={self.static_ip}")
            parts.append(f"gw={self.gateway}")
        else:
            parts.append("ip=dhcp")
        parts.append("firewall=1")
        parts.append(f"hwaddr={mac_address}")
        return ",".join(parts)

    def describe(self) -> str:
        if self.mode is NetworkMode.STATIC:
            return f"Static IP {self.static_ip} via {self.gateway}"
        return "DHCP"


class FirewallScope(Enum):
    WORKLOAD = "workload"
    NODE = "node"


class RuleChange(Enum):
    CREATED = "created"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass(frozen=True)
class FirewallRule:
    """An inbound allow rule identified solely by its marker within a scope."""

    marker: str
    port: int
    scope: FirewallScope
    source: str = "any"
    proto: str = "tcp"

    def to_params(self) -> Dict[str, object]:
        """Platform API parameters for creating this rule."""
        params: Dict[str, object] = {
            "type": "in",
            "action": "ACCEPT",
            "proto": self.proto,
            "dport": str(self.port),
            "comment": self.marker,
            "enable": 1,
        }
        if self.source and self.source != "any":
            params["source"] = self.source
        return params

    def matches(self, existing: Dict[str, object]) -> bool:
        """True when an existing platform rule is identical to this one."""
        wanted = self.to_params()
        for key, value in wanted.items():
            if str(existing.get(key, "")) != str(value):
                return False
        return str(existing.get("source", "") or "") == str(wanted.get("source", ""))


@dataclass(frozen=True)
class ApiCredential:
    """A platform API token. The secret is only known at creation time."""

    token_id: str
    secret: Optional[str] = None

    @property
    def secret_known(self) -> bool:
        return self.secret is not None


@dataclass(frozen=True)
class ManagedWorkload:
    """The single container this tool owns."""

    id: int
    name: str
    storage_pool: str
    template_storage_pool: str
    template_ref: str
    memory_mb: int
    cpu_cores: int
    rootfs_gb: int

    @property
    def ostemplate(self) -> str:
        return f"{self.template_storage_pool}:vztmpl/{self.template_ref}"

    @property
    def rootfs(self) -> str:
        return f"{self.storage_pool}:{self.rootfs_gb}"


@dataclass(frozen=True)
class ProvisioningPlan:
    """Everything the apply phase needs, computed without side effects."""

    node: str
    workload: ManagedWorkload
    network: NetworkPlan
    mac_address: str
    mac_generated: bool
    api_key: str
    api_key_generated: bool
    port: int
    image_reference: str
    auto_update: Optional[bool] = None
    interface_addresses: Dict[str, str] = field(default_factory=dict)
    firewall_source: str = "any"

    @property
    def interfaces(self) -> List[str]:
        return list(self.interface_addresses)
