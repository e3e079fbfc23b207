"""
Instance id, storage and template selection.

Every decision re-reads platform inventory at the moment it is made; there
is no locking primitive to rely on, so the freshest view is the best view.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from quickvm_setup.errors import (
    AmbiguousError,
    ConflictError,
    ExternalCommandFailure,
    NotFoundError,
)
from quickvm_setup.host_shell import HostShell
from quickvm_setup.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

MIN_GUEST_ID = 100

CONTAINER_CONTENT = "rootdir"
TEMPLATE_CONTENT = "vztmpl"


def next_free_id(used_ids: Iterable[int], start: int = MIN_GUEST_ID) -> int:
    """Smallest id >= ``start`` not present in ``used_ids``."""
    candidate = start
    for used in sorted(set(used_ids)):
        if used < candidate:
            continue
        if used == candidate:
            candidate += 1
        else:
            break
    return candidate


def _content_kinds(pool: Dict[str, Any]) -> List[str]:
    return [c.strip() for c in str(pool.get("content", "")).split(",") if c.strip()]


def _is_active(pool: Dict[str, Any]) -> bool:
    return bool(int(pool.get("active", 0))) and bool(int(pool.get("enabled", 1)))


def _describe_pool(pool: Dict[str, Any]) -> str:
    avail = pool.get("avail")
    avail_text = f", {int(avail) // 1024 ** 3} GiB free" if avail is not None else ""
    return f"{pool['storage']} ({pool.get('type', '?')}{avail_text})"


class ResourceAllocator:
    """Chooses the instance id, storage pools and OS template."""

    def __init__(self, client: ProxmoxClient, node: str, shell: Optional[HostShell] = None):
        self.client = client
        self.node = node
        self.shell = shell

    # === INSTANCE ID ===

    def used_ids(self) -> List[int]:
        """Guest ids in use, degrading from the cluster index to local lists."""
        try:
            ids = self.client.cluster_vmids()
            if ids:
                return sorted(ids)
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Cluster inventory unavailable ({e}), falling back to local guest lists")

        try:
            return sorted(self.client.node_vmids(self.node))
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Local guest lists unavailable ({e}), assuming no ids are in use")
            return []

    def allocate_instance_id(self, explicit_id: Optional[int] = None) -> int:
        used = self.used_ids()
        logger.info(f"Currently used IDs: {' '.join(map(str, used)) or 'none'}")

        if explicit_id is not None:
            if explicit_id in used:
                raise ConflictError(
                    f"Container ID {explicit_id} is already in use",
                    remediation="Choose a different --container-id, or omit it to auto-select the next free ID",
                )
            logger.info(f"Using requested container ID: {explicit_id}")
            return explicit_id

        vmid = next_free_id(used)
        logger.info(f"✅ Selected container ID: {vmid}")
        return vmid

    def ensure_id_free(self, vmid: int) -> None:
        """Re-check an already-chosen id right before it is claimed."""
        if vmid in self.used_ids():
            raise ConflictError(
                f"Container ID {vmid} was taken by another guest while provisioning",
                remediation="Re-run the installer to pick a new ID",
            )

    # === STORAGE ===

    def active_pools(self) -> List[Dict[str, Any]]:
        return [p for p in self.client.storage_status(self.node) if _is_active(p)]

    def resolve_storage(self, explicit: Optional[str], required_content: str, purpose: str = "storage") -> str:
        pools = self.active_pools()
        flag = "--template-storage" if required_content == TEMPLATE_CONTENT else "--storage"

        if explicit:
            pool = next((p for p in pools if p.get("storage") == explicit), None)
            if pool is None:
                available = ", ".join(_describe_pool(p) for p in pools) or "none"
                raise NotFoundError(
                    f"Storage '{explicit}' is not found or not active (active: {available})",
                    remediation=f"Pick one of the active storages with {flag} <name>",
                )
            if required_content not in _content_kinds(pool):
                logger.warning(
                    f"⚠️  Storage '{explicit}' does not advertise '{required_content}' content; "
                    f"{purpose} creation may fail"
                )
            logger.info(f"Using specified {purpose}: {explicit}")
            return explicit

        candidates = [p for p in pools if required_content in _content_kinds(p)]
        if not candidates:
            raise NotFoundError(
                f"No active storage supports '{required_content}' content for the {purpose}",
                remediation=f"Enable '{required_content}' on a storage (pvesm set <name> --content ...) or pass {flag}",
            )
        if len(candidates) > 1:
            names = [p["storage"] for p in candidates]
            raise AmbiguousError(
                f"Multiple active storages support '{required_content}': "
                + ", ".join(_describe_pool(p) for p in candidates),
                candidates=names,
                remediation=f"Choose one explicitly, e.g. {flag} {names[0]}",
            )
        selected = candidates[0]["storage"]
        logger.info(f"✅ Auto-selected {purpose}: {selected}")
        return selected

    def resolve_template_storage(self, explicit: Optional[str], container_storage: str) -> str:
        """Template pool, preferring the container pool when it can hold templates."""
        if not explicit:
            for pool in self.active_pools():
                if pool.get("storage") == container_storage and TEMPLATE_CONTENT in _content_kinds(pool):
                    logger.info(f"✅ Using container storage {container_storage} for templates")
                    return container_storage
        return self.resolve_storage(explicit, TEMPLATE_CONTENT, purpose="template storage")

    # === TEMPLATES ===

    def refresh_template_catalog(self) -> None:
        if self.shell is None:
            return
        try:
            self.shell.run(["pveam", "update"])
            logger.info("Template catalog updated")
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Could not refresh template catalog, using cached list: {e}")

    def resolve_template(self, os_family: str) -> str:
        """Most recent system template whose name contains ``os_family``."""
        self.refresh_template_catalog()
        catalog = self.client.available_templates(self.node)
        family = os_family.lower()
        matches = sorted(
            t["template"]
            for t in catalog
            if t.get("section", "system") == "system" and family in str(t.get("template", "")).lower()
        )
        if not matches:
            examples = ", ".join(sorted(t.get("template", "?") for t in catalog)[:10]) or "none"
            raise NotFoundError(
                f"No {os_family} templates found in the template catalog (available: {examples})",
                remediation="Run 'pveam update' and 'pveam available --section system' to inspect the catalog",
            )
        template = matches[-1]
        logger.info(f"✅ Selected {os_family} template: {template}")
        return template

    def template_downloaded(self, storage: str, template: str) -> bool:
        content = self.client.storage_content(self.node, storage, "vztmpl")
        return any(str(item.get("volid", "")).endswith(f"vztmpl/{template}") for item in content)

    def latest_downloaded_template(self, storage: str, os_family: str) -> Optional[str]:
        content = self.client.storage_content(self.node, storage, "vztmpl")
        names = sorted(
            str(item["volid"]).split("vztmpl/", 1)[-1]
            for item in content
            if os_family.lower() in str(item.get("volid", "")).lower()
        )
        return names[-1] if names else None

    def ensure_template(self, storage: str, template: str) -> None:
        if self.template_downloaded(storage, template):
            logger.info(f"✅ Template '{template}' already available on '{storage}'")
            return
        logger.info(f"Downloading template '{template}' to '{storage}'...")
        upid = self.client.download_template(self.node, storage, template)
        self.client.wait_for_task(self.node, upid, timeout=900)
        logger.info(f"✅ Template '{template}' downloaded to '{storage}'")
