"""Provisioning configuration, built once from flags and environment."""

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

from quickvm_setup.errors import ValidationError

# Canonical workload identity
SERVICE_NAME = "quickvm-provider"
IMAGE_REPOSITORY = "ghcr.io/quickvm/proxmox-provider/proxmox-provider"
DEFAULT_IMAGE_TAG = "sha-0760b32"
OS_FAMILY = "fedora"

# Host paths (the config dir is bind-mounted into the workload at the same path)
DATA_DIR = "/var/quickvm"
CONFIG_DIR = "/etc/quickvm"
CERTS_DIR = f"{CONFIG_DIR}/certs"
STATE_FILE = f"{CONFIG_DIR}/state.env"
SERVICE_CONFIG_FILE = f"{CONFIG_DIR}/{SERVICE_NAME}.env"
QUADLET_FILE = f"/etc/containers/systemd/{SERVICE_NAME}.container"
SNIPPETS_STORAGE = "quickvm"

# Root inside an unprivileged container maps to this host uid/gid
ID_MAP_OWNER = (100000, 100000)

# Platform API identity
API_USERNAME = "quickvm"
API_REALM = "pve"
ROLE_NAME = "quickvm"
GROUP_NAME = "quickvm"
TOKEN_ID = "quickvm"

MAC_VENDOR_PREFIX = "00:50:56"
NAMESERVERS = ("1.1.1.1", "8.8.8.8")

DEFAULT_PORT = 8071
DEFAULT_BRIDGE = "vmbr0"

# Bounded polling
NETWORK_SETTLE_SECONDS = 10
NETWORK_WAIT_ATTEMPTS = 30
NETWORK_WAIT_INTERVAL = 2
TASK_TIMEOUT_SECONDS = 120
SERVICE_CHECK_ATTEMPTS = 6
SERVICE_CHECK_INTERVAL = 5

_TRUE_VALUES = {"true", "yes", "1", "on"}
_FALSE_VALUES = {"false", "no", "0", "off"}
_CLEAR_VALUES = {"", "none"}

# Explicit "no VLAN tag", distinct from "not given"
NO_VLAN = 0


def parse_tri_state(value: Optional[str], name: str = "auto-update") -> Optional[bool]:
    """Parse an absent/true/false option; empty or missing means absent."""
    if value is None or value.strip() == "":
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValidationError(
        f"Invalid value for {name}: {value!r}",
        remediation=f"Use --{name} true or --{name} false (or omit it to leave the policy unchanged)",
    )


def parse_interfaces(value: Optional[str]) -> Optional[Tuple[str, ...]]:
    """Split a comma-separated interface list, dropping blanks and duplicates.

    None means not given; an empty value or "none" means no forwarding (empty tuple).
    """
    if value is None:
        return None
    if value.strip().lower() in _CLEAR_VALUES:
        return ()
    seen = []
    for name in value.split(","):
        name = name.strip()
        if name and name not in seen:
            seen.append(name)
    return tuple(seen)


def parse_vlan(value: Optional[str]) -> Optional[int]:
    """None when not given, NO_VLAN for an explicit "none", "0" or empty value, else the tag."""
    if value is None:
        return None
    raw = value.strip().lower()
    if raw in _CLEAR_VALUES or raw == "0":
        return NO_VLAN
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(
            f"Invalid VLAN ID: {value!r}",
            remediation="Pass --vlan <1-4094>, or --vlan none to remove the tag",
        )


def _env_bool(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in _TRUE_VALUES


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class ProvisioningConfig:
    """Immutable operator input for one provisioning or uninstall run."""

    container_id: Optional[int] = None
    memory_mb: int = 2048
    cores: int = 2
    rootfs_gb: int = 8
    api_key: Optional[str] = None
    bridge: str = DEFAULT_BRIDGE
    vlan_id: Optional[int] = None
    port: Optional[int] = None
    storage: Optional[str] = None
    template_storage: Optional[str] = None
    ip_address: Optional[str] = None
    gateway: Optional[str] = None
    image_tag: str = DEFAULT_IMAGE_TAG
    interfaces: Optional[Tuple[str, ...]] = None
    firewall_source: str = "any"
    skip_api_user: bool = False
    skip_network_check: bool = False
    auto_update: Optional[bool] = None
    debug: bool = False
    dry_run: bool = False

    # Platform connection
    pve_host: Optional[str] = None
    api_token: Optional[str] = None
    ssh_user: str = "root"
    ssh_key_path: str = "~/.ssh/id_rsa"
    verify_ssl: bool = False

    def __post_init__(self) -> None:
        if self.memory_mb < 16:
            raise ValidationError(f"Memory must be at least 16 MB, got {self.memory_mb}")
        if self.cores < 1:
            raise ValidationError(f"CPU cores must be at least 1, got {self.cores}")
        if self.rootfs_gb < 1:
            raise ValidationError(f"Root filesystem size must be at least 1 GB, got {self.rootfs_gb}")
        if self.port is not None and not 1 <= self.port <= 65535:
            raise ValidationError(
                f"Port must be between 1 and 65535, got {self.port}",
                remediation="Pass a valid port with --port, e.g. --port 8071",
            )
        if self.container_id is not None and self.container_id < 100:
            raise ValidationError(
                f"Container ID must be 100 or greater, got {self.container_id}",
                remediation="Omit --container-id to auto-select the next free ID",
            )
        if self.api_key is not None and not self.api_key.strip():
            raise ValidationError("API key must not be empty")

    @property
    def image_reference(self) -> str:
        return f"{IMAGE_REPOSITORY}:{self.image_tag}"

    @property
    def full_username(self) -> str:
        return f"{API_USERNAME}@{API_REALM}"

    @classmethod
    def from_environment(cls, **overrides) -> "ProvisioningConfig":
        """Build a config from environment variables (and .env), then apply overrides."""
        load_dotenv()

        values = {
            "container_id": _env_int("CONTAINER_ID"),
            "memory_mb": _env_int("MEMORY") or 2048,
            "cores": _env_int("CORES") or 2,
            "rootfs_gb": _env_int("ROOTFS_SIZE") or 8,
            "api_key": os.getenv("API_KEY") or None,
            "bridge": os.getenv("BRIDGE", DEFAULT_BRIDGE),
            "vlan_id": parse_vlan(os.getenv("VLAN")),
            "port": _env_int("HOST_PORT"),
            "storage": os.getenv("STORAGE") or None,
            "template_storage": os.getenv("TEMPLATE_STORAGE") or None,
            "ip_address": os.getenv("IP") or None,
            "gateway": os.getenv("GATEWAY") or None,
            "image_tag": os.getenv("TAG", DEFAULT_IMAGE_TAG),
            "interfaces": parse_interfaces(os.getenv("INTERFACES")),
            "firewall_source": os.getenv("FIREWALL_SOURCE", "any"),
            "skip_api_user": _env_bool("SKIP_API_USER"),
            "skip_network_check": _env_bool("SKIP_NETWORK_CHECK"),
            "auto_update": parse_tri_state(os.getenv("AUTO_UPDATE")),
            "debug": _env_bool("DEBUG"),
            "pve_host": os.getenv("PVE_HOST") or None,
            "api_token": os.getenv("API_TOKEN") or None,
            "ssh_user": os.getenv("SSH_USER", "root"),
            "ssh_key_path": os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"),
        }
        values.update(overrides)
        return cls(**values)
