"""API key materialization and platform API user/token provisioning."""

import logging
import secrets
import string
from typing import List, Optional, Tuple

from quickvm_setup.config import GROUP_NAME, ROLE_NAME, TOKEN_ID
from quickvm_setup.errors import ExternalCommandFailure
from quickvm_setup.models import ApiCredential
from quickvm_setup.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

API_KEY_LENGTH = 48
API_KEY_ALPHABET = string.ascii_letters + string.digits

ROLE_PRIVILEGES: List[str] = [
    # Guest lifecycle
    "VM.Allocate",
    "VM.Clone",
    "VM.Config.CDROM",
    "VM.Config.CPU",
    "VM.Config.Cloudinit",
    "VM.Config.Disk",
    "VM.Config.HWType",
    "VM.Config.Memory",
    "VM.Config.Network",
    "VM.Config.Options",
    "VM.Console",
    "VM.Migrate",
    "VM.Monitor",
    "VM.PowerMgmt",
    "VM.Snapshot",
    "VM.Snapshot.Rollback",
    # Storage
    "Datastore.Allocate",
    "Datastore.AllocateSpace",
    "Datastore.Audit",
    # Pools and node console
    "Pool.Allocate",
    "Sys.Console",
]


def generate_api_key(length: int = API_KEY_LENGTH) -> str:
    return "".join(secrets.choice(API_KEY_ALPHABET) for _ in range(length))


def materialize_api_key(existing: Optional[str] = None, override: Optional[str] = None) -> Tuple[str, bool]:
    """Return ``(key, generated)``.

    Precedence: operator override, then the key already deployed, then a
    freshly generated one. A deployed key is never replaced implicitly since
    existing clients depend on it.
    """
    if override:
        if existing and existing != override:
            logger.warning("⚠️  Replacing the deployed API key with the one supplied on the command line")
        return override, False
    if existing:
        logger.info("Using existing API key from previous deployment")
        return existing, False
    logger.info("Generated new API key")
    return generate_api_key(), True


class CredentialManager:
    """Idempotent role/group/user/token setup for the provider's API access."""

    def __init__(self, client: ProxmoxClient, userid: str, role: str = ROLE_NAME, group: str = GROUP_NAME):
        self.client = client
        self.userid = userid
        self.role = role
        self.group = group

    def ensure_role(self, privileges: Optional[List[str]] = None) -> None:
        """Create the role, or converge its privileges if it already exists."""
        privs = ",".join(privileges or ROLE_PRIVILEGES)
        existing = {r.get("roleid") for r in self.client.list_roles()}
        if self.role in existing:
            logger.info(f"Role {self.role} already exists, updating privileges...")
            try:
                self.client.update_role(self.role, privs)
                logger.info(f"✅ Role {self.role} privileges updated")
            except ExternalCommandFailure as e:
                logger.warning(f"⚠️  Failed to update role privileges, but role exists: {e}")
            return
        self.client.create_role(self.role, privs)
        logger.info(f"✅ Role {self.role} created with VM management privileges")

    def ensure_group(self) -> None:
        existing = {g.get("groupid") for g in self.client.list_groups()}
        if self.group in existing:
            logger.info(f"Group {self.group} already exists, skipping creation")
            return
        self.client.create_group(self.group, comment="API automation users")
        logger.info(f"✅ Group {self.group} created")

    def ensure_user(self) -> None:
        existing = {u.get("userid") for u in self.client.list_users()}
        if self.userid in existing:
            logger.info(f"User {self.userid} already exists, skipping creation")
            return
        # No password: the account authenticates with API tokens only
        self.client.create_user(self.userid, comment="API automation user for VM management", groups=self.group)
        logger.info(f"✅ User {self.userid} created")

    def ensure_permissions(self, path: str = "/") -> None:
        try:
            self.client.grant_role(path, self.userid, self.role)
            logger.info(f"✅ Granted role {self.role} to {self.userid} on {path}")
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Failed to set permissions, continuing (they may already exist): {e}")

    def ensure_api_token(self, token_id: str = TOKEN_ID) -> Optional[ApiCredential]:
        """Return the token; the secret is only present when it was created now.

        None means the token could neither be found nor created.
        """
        full_id = f"{self.userid}!{token_id}"
        existing = {t.get("tokenid") for t in self.client.list_tokens(self.userid)}
        if token_id in existing:
            logger.warning(
                f"⚠️  API token '{full_id}' already exists; its secret cannot be recovered (only shown at creation)"
            )
            return ApiCredential(token_id=full_id, secret=None)

        try:
            created = self.client.create_token(self.userid, token_id, comment="QuickVM automation token")
        except ExternalCommandFailure as e:
            logger.warning(f"⚠️  Failed to create API token, continuing: {e}")
            return None
        logger.info(f"✅ API token {full_id} created")
        return ApiCredential(token_id=created.get("full-tokenid", full_id), secret=created.get("value"))

    def setup(self) -> Optional[ApiCredential]:
        """Role, group, user, ACL and token, in dependency order."""
        logger.info(f"Setting up Proxmox API user {self.userid}...")
        self.ensure_role()
        self.ensure_group()
        self.ensure_user()
        self.ensure_permissions()
        return self.ensure_api_token()
