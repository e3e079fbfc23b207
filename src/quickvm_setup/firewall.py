#!/usr/bin/env python3
"""
src/quickvm_setup/firewall.py

Marker-keyed firewall reconciliation for the workload and the host node.

Each rule is identified by its marker (stored in the platform rule comment).
Upsert finds every rule carrying the marker in the target scope, removes
them by position and appends the desired rule, so repeated runs converge on
exactly one rule per (marker, scope). An identical existing rule is left
alone.

Node scope also owns the port-forward helper: a generated shell script plus
a systemd unit on the host that DNATs the configured interface addresses to
the workload's current address. The script looks the address up every time
it runs because DHCP may hand the workload a new one after a restart.

All firewall work is best-effort: failures are logged and reported as
RuleChange.FAILED, never raised.
"""

import logging
import shlex
import textwrap
from typing import Dict, Iterable, List, Optional

from quickvm_setup.errors import ExternalCommandFailure
from quickvm_setup.host_shell import HostShell
from quickvm_setup.models import FirewallRule, FirewallScope, RuleChange
from quickvm_setup.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)


def firewall_marker(service_name: str, port: int) -> str:
    return f"{service_name}-port-{port}"


def workload_firewall_file(vmid: int) -> str:
    return f"/etc/pve/firewall/{vmid}.fw"


class FirewallReconciler:
    """Upserts and tears down marker-tagged allow rules."""

    def __init__(self, client: ProxmoxClient, node: str, shell: Optional[HostShell] = None):
        self.client = client
        self.node = node
        self.shell = shell

    @staticmethod
    def _target(scope: FirewallScope, vmid: Optional[int]) -> Optional[int]:
        if scope is FirewallScope.WORKLOAD:
            if vmid is None:
                raise ValueError("workload-scope firewall rules need a container id")
            return vmid
        return None

    def _matching(self, marker: str, vmid: Optional[int]) -> List[Dict]:
        rules = self.client.firewall_rules(self.node, vmid)
        return [r for r in rules if r.get("comment") == marker]

    def _delete(self, matches: List[Dict], vmid: Optional[int]) -> None:
        # Highest position first so earlier positions stay valid
        for rule in sorted(matches, key=lambda r: int(r["pos"]), reverse=True):
            self.client.delete_firewall_rule(self.node, int(rule["pos"]), vmid)

    def upsert(self, rule: FirewallRule, vmid: Optional[int] = None) -> RuleChange:
        target = self._target(rule.scope, vmid)
        where = f"CT {vmid}" if target is not None else f"node {self.node}"
        try:
            matches = self._matching(rule.marker, target)
            if len(matches) == 1 and rule.matches(matches[0]):
                logger.info(f"✅ Firewall rule '{rule.marker}' already present on {where}")
                return RuleChange.UNCHANGED

            self._delete(matches, target)
            self.client.add_firewall_rule(self.node, rule.to_params(), target)
            if target is not None:
                self.client.enable_firewall(self.node, target)
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Could not apply firewall rule '{rule.marker}' on {where}: {e}")
            return RuleChange.FAILED

        change = RuleChange.REPLACED if matches else RuleChange.CREATED
        logger.info(f"✅ Firewall rule '{rule.marker}' {change.value} on {where} (port {rule.port}/{rule.proto})")
        return change

    def teardown(self, marker: str, scope: FirewallScope, vmid: Optional[int] = None) -> RuleChange:
        target = self._target(scope, vmid)
        where = f"CT {vmid}" if target is not None else f"node {self.node}"
        try:
            matches = self._matching(marker, target)
            if not matches:
                logger.info(f"No firewall rule '{marker}' on {where}")
                return RuleChange.ABSENT
            self._delete(matches, target)
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Could not remove firewall rule '{marker}' on {where}: {e}")
            return RuleChange.FAILED
        logger.info(f"✅ Removed firewall rule '{marker}' from {where}")
        return RuleChange.REMOVED

    def remove_workload_file(self, vmid: int) -> bool:
        """Delete the container's dedicated firewall file, if any."""
        if self.shell is None:
            return False
        path = workload_firewall_file(vmid)
        try:
            removed = self.shell.remove_file(path)
        except (ExternalCommandFailure, OSError) as e:
            logger.warning(f"⚠️  Could not remove {path}: {e}")
            return False
        if removed:
            logger.info(f"✅ Removed container firewall configuration {path}")
            self.reload()
        return removed

    def reload(self) -> None:
        """Recompile and reload the host firewall; problems are only warnings."""
        if self.shell is None:
            return
        steps = (
            (["pve-firewall", "compile"], "Firewall compile had warnings"),
            (["systemctl", "reload", "pve-firewall"], "Could not reload pve-firewall service"),
        )
        for command, warning in steps:
            try:
                result = self.shell.run(command, check=False)
            except ExternalCommandFailure as e:
                logger.warning(f"⚠️  {warning}: {e}")
                return
            if not result.ok:
                logger.warning(f"⚠️  {warning}")


class PortForwardHelper:
    """Host-side DNAT helper that maps interface addresses to the workload."""

    def __init__(self, shell: HostShell, service_name: str):
        self.shell = shell
        self.service_name = service_name
        self.unit_name = f"{service_name}-port-forward.service"
        self.script_path = f"/usr/local/sbin/{service_name}-port-forward.sh"
        self.unit_path = f"/etc/systemd/system/{self.unit_name}"

    def render_script(self, vmid: int, port: int, interfaces: Iterable[str], marker: str) -> str:
        names = " ".join(shlex.quote(i) for i in interfaces)
        return textwrap.dedent(
            f"""\
            #!/bin/bash
            # Managed by quickvm-setup; regenerated on every provisioning run.
            set -euo pipefail

            VMID={vmid}
            PORT={port}
            MARKER={shlex.quote(marker)}
            INTERFACES=({names})

            clear_rules() {{
                local rules
                rules="$(iptables-save -t nat | grep -E -- "--comment \\"?${{MARKER}}\\"?( |$)" || true)"
                [ -n "$rules" ] || return 0
                echo "$rules" | sed 's/^-A /-D /' | while read -r rule; do
                    eval "iptables -t nat ${{rule}}"
                done
            }}

            workload_address() {{
                pct exec "$VMID" -- ip -4 -o addr show dev eth0 | awk '{{print $4}}' | cut -d/ -f1 | head -n1
            }}

            interface_address() {{
                ip -4 -o addr show dev "$1" | awk '{{print $4}}' | cut -d/ -f1 | head -n1
            }}

            case "${{1:-start}}" in
                stop)
                    clear_rules
                    ;;
                start)
                    TARGET="$(workload_address || true)"
                    if [ -z "$TARGET" ]; then
                        echo "container $VMID has no IPv4 address yet" >&2
                        exit 1
                    fi
                    clear_rules
                    sysctl -q -w net.ipv4.ip_forward=1
                    for iface in "${{INTERFACES[@]}}"; do
                        ADDR="$(interface_address "$iface" || true)"
                        if [ -z "$ADDR" ]; then
                            echo "interface $iface has no IPv4 address, skipping" >&2
                            continue
                        fi
                        iptables -t nat -A PREROUTING -d "$ADDR" -p tcp --dport "$PORT" \\
                            -m comment --comment "$MARKER" -j DNAT --to-destination "$TARGET:$PORT"
                    done
                    iptables -t nat -A POSTROUTING -d "$TARGET" -p tcp --dport "$PORT" \\
                        -m comment --comment "$MARKER" -j MASQUERADE
                    ;;
                *)
                    echo "usage: $0 [start|stop]" >&2
                    exit 2
                    ;;
            esac
            """
        )

    def render_unit(self, vmid: int) -> str:
        return textwrap.dedent(
            f"""\
            [Unit]
            Description=Port forwarding for {self.service_name} (CT {vmid})
            After=network-online.target pve-guests.service
            Wants=network-online.target

            [Service]
            Type=oneshot
            RemainAfterExit=yes
            ExecStart={self.script_path} start
            ExecStop={self.script_path} stop
            Restart=on-failure
            RestartSec=15

            [Install]
            WantedBy=multi-user.target
            """
        )

    def install(self, vmid: int, port: int, interfaces: Iterable[str], marker: str) -> bool:
        interfaces = list(interfaces)
        try:
            self.shell.write_file(self.script_path, self.render_script(vmid, port, interfaces, marker), mode=0o755)
            self.shell.write_file(self.unit_path, self.render_unit(vmid), mode=0o644)
            self.shell.run(["systemctl", "daemon-reload"])
            self.shell.run(["systemctl", "enable", self.unit_name])
            self.shell.run(["systemctl", "restart", self.unit_name])
        except (ExternalCommandFailure, OSError) as e:
            logger.warning(f"⚠️  Port forwarding helper could not be installed: {e}")
            return False
        logger.info(f"✅ Port forwarding {', '.join(interfaces)}:{port} -> CT {vmid} via {self.unit_name}")
        return True

    def remove(self) -> bool:
        """Stop, disable and delete the helper. Returns True if anything was removed."""
        unit_present = self.shell.file_exists(self.unit_path)
        script_present = self.shell.file_exists(self.script_path)
        if not (unit_present or script_present):
            return False

        if unit_present:
            self.shell.run(["systemctl", "disable", "--now", self.unit_name], check=False)
        if script_present:
            # Clears any NAT rules left behind by a unit that was never stopped cleanly
            self.shell.run([self.script_path, "stop"], check=False)
        try:
            self.shell.remove_file(self.unit_path)
            self.shell.remove_file(self.script_path)
            self.shell.run(["systemctl", "daemon-reload"], check=False)
        except (ExternalCommandFailure, OSError) as e:
            logger.warning(f"⚠️  Could not fully remove port forwarding helper: {e}")
            return False
        logger.info(f"✅ Removed port forwarding helper {self.unit_name}")
        return True
