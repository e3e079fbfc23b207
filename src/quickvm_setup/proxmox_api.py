"""Typed wrapper around the Proxmox VE API (proxmoxer)."""

import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from quickvm_setup.config import TASK_TIMEOUT_SECONDS, ProvisioningConfig
from quickvm_setup.errors import ExternalCommandFailure, ValidationError, WorkloadTimeoutError

logger = logging.getLogger(__name__)


class ProxmoxClient:
    """Structured access to the platform API.

    Backend selection:
      * no host            -> ``local`` (pvesh on this node)
      * host + API_TOKEN   -> ``https`` with token auth
      * host only          -> ``ssh_paramiko``
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_token: Optional[str] = None,
        ssh_user: str = "root",
        ssh_key_path: str = "~/.ssh/id_rsa",
        verify_ssl: bool = False,
        api: Any = None,
    ) -> None:
        self.host = host
        self._node: Optional[str] = None

        if api is not None:
            self.proxmox = api
            self.backend = "custom"
        elif host is None:
            self.backend = "local"
            self.proxmox = ProxmoxAPI(backend="local", service="PVE")
        elif api_token:
            self.backend = "https"
            try:
                user_token, token_value = api_token.split("=", 1)
                user, token_name = user_token.split("!", 1)
            except ValueError:
                raise ValidationError(
                    "API_TOKEN must look like user@realm!tokenname=secret",
                    remediation="export API_TOKEN='root@pam!mytoken=xxxxxxxx-xxxx-...'",
                )
            self.proxmox = ProxmoxAPI(
                host, user=user, token_name=token_name, token_value=token_value, verify_ssl=verify_ssl
            )
        else:
            self.backend = "ssh_paramiko"
            self.proxmox = ProxmoxAPI(
                host,
                user=ssh_user,
                backend="ssh_paramiko",
                private_key_file=os.path.expanduser(ssh_key_path),
                service="PVE",
            )
        logger.debug(f"Proxmox API backend: {self.backend}")

    @classmethod
    def from_config(cls, config: ProvisioningConfig) -> "ProxmoxClient":
        return cls(
            host=config.pve_host,
            api_token=config.api_token,
            ssh_user=config.ssh_user,
            ssh_key_path=config.ssh_key_path,
            verify_ssl=config.verify_ssl,
        )

    @staticmethod
    def _call(description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Invoke an API endpoint, converting transport errors into ExternalCommandFailure."""
        try:
            return func(*args, **kwargs)
        except ResourceException as e:
            raise ExternalCommandFailure(
                f"Proxmox API call failed: {description}",
                command=description,
                returncode=getattr(e, "status_code", None),
                stderr=str(e),
            )
        except OSError as e:
            raise ExternalCommandFailure(
                f"Proxmox API unreachable: {description}", command=description, stderr=str(e)
            )

    # === NODE IDENTITY ===

    def node_name(self) -> str:
        """Name of the node serving the API (the host being provisioned)."""
        if self._node is not None:
            return self._node

        try:
            members = self._call("GET /cluster/status", self.proxmox.cluster.status.get)
            for member in members:
                if member.get("type") == "node" and member.get("local"):
                    self._node = member["name"]
                    return self._node
        except ExternalCommandFailure as e:
            logger.debug(f"cluster status unavailable: {e}")

        nodes = self._call("GET /nodes", self.proxmox.nodes.get)
        if len(nodes) == 1:
            self._node = nodes[0]["node"]
            return self._node
        if self.host:
            short = self.host.split(".")[0]
            for n in nodes:
                if n.get("node") == short:
                    self._node = short
                    return self._node
        raise ExternalCommandFailure(
            "Could not determine which cluster node this host is",
            remediation="Run the tool on the target Proxmox node itself",
        )

    # === INVENTORY ===

    def cluster_vmids(self) -> List[int]:
        """All guest ids known to the cluster (containers and VMs)."""
        resources = self._call("GET /cluster/resources?type=vm", self.proxmox.cluster.resources.get, type="vm")
        return [int(r["vmid"]) for r in resources if "vmid" in r]

    def list_containers(self, node: str) -> List[Dict[str, Any]]:
        return self._call(f"GET /nodes/{node}/lxc", self.proxmox.nodes(node).lxc.get)

    def list_vms(self, node: str) -> List[Dict[str, Any]]:
        return self._call(f"GET /nodes/{node}/qemu", self.proxmox.nodes(node).qemu.get)

    def node_vmids(self, node: str) -> List[int]:
        """Guest ids on a single node, used when the cluster index is unavailable."""
        ids = [int(ct["vmid"]) for ct in self.list_containers(node)]
        ids.extend(int(vm["vmid"]) for vm in self.list_vms(node))
        return ids

    def find_containers_by_name(self, node: str, name: str) -> List[int]:
        return sorted(int(ct["vmid"]) for ct in self.list_containers(node) if ct.get("name") == name)

    def list_networks(self, node: str) -> List[Dict[str, Any]]:
        return self._call(f"GET /nodes/{node}/network", self.proxmox.nodes(node).network.get)

    # === STORAGE AND TEMPLATES ===

    def storage_status(self, node: str) -> List[Dict[str, Any]]:
        return self._call(f"GET /nodes/{node}/storage", self.proxmox.nodes(node).storage.get)

    def storage_content(self, node: str, storage: str, content: str) -> List[Dict[str, Any]]:
        return self._call(
            f"GET /nodes/{node}/storage/{storage}/content",
            self.proxmox.nodes(node).storage(storage).content.get,
            content=content,
        )

    def storage_ids(self) -> List[str]:
        return [s["storage"] for s in self._call("GET /storage", self.proxmox.storage.get)]

    def add_dir_storage(self, storage: str, path: str, content: str) -> None:
        self._call(
            "POST /storage",
            self.proxmox.storage.post,
            storage=storage,
            type="dir",
            path=path,
            content=content,
        )

    def available_templates(self, node: str) -> List[Dict[str, Any]]:
        return self._call(f"GET /nodes/{node}/aplinfo", self.proxmox.nodes(node).aplinfo.get)

    def download_template(self, node: str, storage: str, template: str) -> str:
        return self._call(
            f"POST /nodes/{node}/aplinfo", self.proxmox.nodes(node).aplinfo.post, storage=storage, template=template
        )

    # === CONTAINERS ===

    def create_container(self, node: str, **params: Any) -> str:
        return self._call(f"POST /nodes/{node}/lxc", self.proxmox.nodes(node).lxc.post, **params)

    def container_config(self, node: str, vmid: int) -> Dict[str, Any]:
        return self._call(f"GET /nodes/{node}/lxc/{vmid}/config", self.proxmox.nodes(node).lxc(vmid).config.get)

    def set_container_config(self, node: str, vmid: int, **params: Any) -> None:
        self._call(f"PUT /nodes/{node}/lxc/{vmid}/config", self.proxmox.nodes(node).lxc(vmid).config.put, **params)

    def container_status(self, node: str, vmid: int) -> str:
        status = self._call(
            f"GET /nodes/{node}/lxc/{vmid}/status/current", self.proxmox.nodes(node).lxc(vmid).status.current.get
        )
        return status.get("status", "unknown")

    def start_container(self, node: str, vmid: int) -> str:
        return self._call(f"POST /nodes/{node}/lxc/{vmid}/status/start", self.proxmox.nodes(node).lxc(vmid).status.start.post)

    def stop_container(self, node: str, vmid: int) -> str:
        return self._call(f"POST /nodes/{node}/lxc/{vmid}/status/stop", self.proxmox.nodes(node).lxc(vmid).status.stop.post)

    def destroy_container(self, node: str, vmid: int) -> str:
        return self._call(f"DELETE /nodes/{node}/lxc/{vmid}", self.proxmox.nodes(node).lxc(vmid).delete, purge=1)

    def wait_for_task(self, node: str, upid: Optional[str], timeout: int = TASK_TIMEOUT_SECONDS, interval: float = 1) -> None:
        """Poll a platform task until it stops; raise if it failed or never finished."""
        if not upid or not str(upid).startswith("UPID:"):
            # The local backend may run synchronously and return no task id
            return
        deadline = time.time() + timeout
        while time.time() < deadline:
            status = self._call(f"GET /nodes/{node}/tasks/{upid}/status", self.proxmox.nodes(node).tasks(upid).status.get)
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus", "")
                if exit_status != "OK":
                    raise ExternalCommandFailure(f"Task {upid} failed: {exit_status}", command=upid, stderr=exit_status)
                return
            time.sleep(interval)
        raise WorkloadTimeoutError(
            f"Task {upid} did not finish within {timeout}s",
            remediation=f"Inspect the task with: pvesh get /nodes/{node}/tasks/{upid}/log",
        )

    # === ACCESS CONTROL ===

    def list_roles(self) -> List[Dict[str, Any]]:
        return self._call("GET /access/roles", self.proxmox.access.roles.get)

    def create_role(self, roleid: str, privs: str) -> None:
        self._call("POST /access/roles", self.proxmox.access.roles.post, roleid=roleid, privs=privs)

    def update_role(self, roleid: str, privs: str) -> None:
        self._call(f"PUT /access/roles/{roleid}", self.proxmox.access.roles(roleid).put, privs=privs)

    def list_groups(self) -> List[Dict[str, Any]]:
        return self._call("GET /access/groups", self.proxmox.access.groups.get)

    def create_group(self, groupid: str, comment: str) -> None:
        self._call("POST /access/groups", self.proxmox.access.groups.post, groupid=groupid, comment=comment)

    def list_users(self) -> List[Dict[str, Any]]:
        return self._call("GET /access/users", self.proxmox.access.users.get)

    def create_user(self, userid: str, comment: str, groups: str) -> None:
        self._call("POST /access/users", self.proxmox.access.users.post, userid=userid, comment=comment, groups=groups)

    def list_tokens(self, userid: str) -> List[Dict[str, Any]]:
        return self._call(f"GET /access/users/{userid}/token", self.proxmox.access.users(userid).token.get)

    def create_token(self, userid: str, tokenid: str, comment: str) -> Dict[str, Any]:
        # privsep=0: the token carries the user's own privileges
        return self._call(
            f"POST /access/users/{userid}/token/{tokenid}",
            self.proxmox.access.users(userid).token(tokenid).post,
            privsep=0,
            comment=comment,
        )

    def grant_role(self, path: str, userid: str, roleid: str) -> None:
        self._call("PUT /access/acl", self.proxmox.access.acl.put, path=path, users=userid, roles=roleid)

    # === FIREWALL ===

    def _firewall(self, node: str, vmid: Optional[int]) -> Any:
        if vmid is None:
            return self.proxmox.nodes(node).firewall
        return self.proxmox.nodes(node).lxc(vmid).firewall

    @staticmethod
    def _firewall_path(node: str, vmid: Optional[int]) -> str:
        if vmid is None:
            return f"/nodes/{node}/firewall"
        return f"/nodes/{node}/lxc/{vmid}/firewall"

    def firewall_rules(self, node: str, vmid: Optional[int] = None) -> List[Dict[str, Any]]:
        path = self._firewall_path(node, vmid)
        return self._call(f"GET {path}/rules", self._firewall(node, vmid).rules.get)

    def add_firewall_rule(self, node: str, params: Dict[str, Any], vmid: Optional[int] = None) -> None:
        path = self._firewall_path(node, vmid)
        self._call(f"POST {path}/rules", self._firewall(node, vmid).rules.post, **params)

    def delete_firewall_rule(self, node: str, pos: int, vmid: Optional[int] = None) -> None:
        path = self._firewall_path(node, vmid)
        self._call(f"DELETE {path}/rules/{pos}", self._firewall(node, vmid).rules(pos).delete)

    def enable_firewall(self, node: str, vmid: int) -> None:
        path = self._firewall_path(node, vmid)
        self._call(f"PUT {path}/options", self._firewall(node, vmid).options.put, enable=1)
