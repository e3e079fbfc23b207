"""Idempotent provisioning of the QuickVM provider container on Proxmox VE."""

__version__ = "0.1.0"
