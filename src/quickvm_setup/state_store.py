"""
Persisted KEY=value records on the host.

The State Store keeps the workload's network identity and API key across
runs and across uninstall. Writes are read-modify-write merges: keys this
tool does not own and any comments are preserved in their original order.
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterable, Optional, Tuple

from quickvm_setup.config import ID_MAP_OWNER, STATE_FILE
from quickvm_setup.errors import ValidationError
from quickvm_setup.host_shell import HostShell
from quickvm_setup.models import (
    STATE_API_KEY,
    STATE_INTERFACES,
    STATE_MAC,
    STATE_PORT,
    STATE_VLAN,
    ProvisioningState,
    is_valid_mac,
)

logger = logging.getLogger(__name__)


def parse_env(text: str) -> "OrderedDict[str, str]":
    """Parse KEY=value lines. Comments and blank lines are dropped; the last duplicate wins."""
    record: "OrderedDict[str, str]" = OrderedDict()
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if not key:
            continue
        # Re-insert so a later duplicate moves to its last position
        record.pop(key, None)
        record[key] = value.strip()
    return record


def render_env(record: Dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in record.items())


def merge_env(existing: Dict[str, str], updates: Dict[str, Optional[str]]) -> "OrderedDict[str, str]":
    """Upsert ``updates`` into ``existing`` by key.

    Existing keys keep their position, new keys are appended, and a value of
    None removes the key.
    """
    merged: "OrderedDict[str, str]" = OrderedDict(existing)
    for key, value in updates.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def merge_env_text(text: str, updates: Dict[str, Optional[str]]) -> str:
    """Apply ``updates`` to KEY=value text line by line.

    Comments, blank lines and keys not being updated stay where they are. An
    updated key is rewritten on its first line (later duplicates are dropped),
    a None value removes the key, and new keys are appended.
    """
    pending = dict(updates)
    lines = []
    for raw in text.splitlines():
        line = raw.strip()
        key = None
        if line and not line.startswith("#") and "=" in line:
            key = line.partition("=")[0].strip()
        if key not in updates:
            lines.append(raw)
        elif key in pending:
            value = pending.pop(key)
            if value is not None:
                lines.append(f"{key}={value}")
    lines.extend(f"{key}={value}" for key, value in pending.items() if value is not None)
    return "".join(f"{line}\n" for line in lines)


class StateStore:
    """Reads and merges the provisioning state file."""

    def __init__(self, shell: HostShell, path: str = STATE_FILE, owner: Optional[Tuple[int, int]] = ID_MAP_OWNER):
        self.shell = shell
        self.path = path
        self.owner = owner

    def read_record(self) -> "OrderedDict[str, str]":
        text = self.shell.read_file(self.path)
        if text is None:
            return OrderedDict()
        return parse_env(text)

    def load(self) -> ProvisioningState:
        """Load the state; a missing file is an empty state."""
        state = ProvisioningState.from_record(self.read_record())
        if state.mac_address and not state.valid_mac:
            logger.warning(f"⚠️  Ignoring malformed MAC address {state.mac_address!r} in {self.path}")
        return state

    def update(
        self,
        mac_address: Optional[str] = None,
        api_key: Optional[str] = None,
        port: Optional[int] = None,
        vlan_id: Optional[int] = None,
        interfaces: Optional[Iterable[str]] = None,
        forget: Iterable[str] = (),
        **extra: str,
    ) -> ProvisioningState:
        """Merge the given fields into the persisted record and return the result.

        Fields passed as None are left as they are on disk. Keys named in
        ``forget`` are removed.
        """
        updates: Dict[str, Optional[str]] = {}
        if mac_address is not None:
            if not is_valid_mac(mac_address):
                raise ValidationError(f"Refusing to persist invalid MAC address: {mac_address}")
            updates[STATE_MAC] = mac_address
        if api_key is not None:
            updates[STATE_API_KEY] = api_key
        if port is not None:
            updates[STATE_PORT] = str(port)
        if vlan_id is not None:
            updates[STATE_VLAN] = str(vlan_id)
        if interfaces is not None:
            updates[STATE_INTERFACES] = ",".join(interfaces)
        updates.update(extra)
        for key in forget:
            updates[key] = None

        text = self.shell.read_file(self.path)
        existing = parse_env(text or "")
        merged_text = merge_env_text(text or "", updates)
        merged = parse_env(merged_text)
        if text is not None and merged == existing:
            logger.debug(f"State file {self.path} already up to date")
            return ProvisioningState.from_record(merged)

        # Operator comments and unknown keys are carried over as written
        self.shell.write_file(self.path, merged_text, mode=0o600, owner=self.owner)
        logger.info(f"✅ Recorded provisioning state in {self.path}")
        return ProvisioningState.from_record(merged)
