"""Workspace provisioning, resolution, and inventory."""

from .inventory import WorkspaceDescriptor, WorkspaceInventory, WorkspaceStatus, format_workspace
from .provisioner import CloneResult, Provisioner, WorktreeResult
from .resolver import (
    Ambiguous,
    NotFound,
    Resolution,
    Resolved,
    WorkspaceMatch,
    resolve_workspace,
)

__all__ = [
    "Ambiguous",
    "CloneResult",
    "NotFound",
    "Provisioner",
    "Resolution",
    "Resolved",
    "WorkspaceDescriptor",
    "WorkspaceInventory",
    "WorkspaceMatch",
    "WorkspaceStatus",
    "WorktreeResult",
    "format_workspace",
    "resolve_workspace",
]
