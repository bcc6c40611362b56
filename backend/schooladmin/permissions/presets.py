"""
Permission presets.

Named bundles of page permissions that can be applied to a user or role in
one step instead of granting each page separately.
"""
from dataclasses import dataclass
from typing import Optional

from schooladmin.permissions.registry import PageAction


@dataclass(frozen=True)
class PermissionPreset:
    id: str
    name: str
    description: str
    pages: tuple[tuple[str, PageAction], ...]


PERMISSION_PRESETS: dict[str, PermissionPreset] = {
    "teacher": PermissionPreset(
        id="teacher",
        name="Teacher",
        description="Standard teacher permissions - can view and manage students",
        pages=(("dashboard", "view"), ("students", "edit")),
    ),
    "counselor": PermissionPreset(
        id="counselor",
        name="Counselor",
        description="Counselor permissions - can view students and SOC",
        pages=(("dashboard", "view"), ("students", "view"), ("soc", "view")),
    ),
    "administrator": PermissionPreset(
        id="administrator",
        name="Administrator",
        description="Full administrator permissions - access to all pages",
        pages=(
            ("dashboard", "view"),
            ("students", "edit"),
            ("resources", "edit"),
            ("soc", "edit"),
            ("api-keys", "edit"),
            ("settings", "view"),
        ),
    ),
    "commander": PermissionPreset(
        id="commander",
        name="Commander",
        description="Commander permissions - can view and manage resources",
        pages=(("dashboard", "view"), ("students", "view"), ("resources", "edit"), ("soc", "view")),
    ),
    "viewer": PermissionPreset(
        id="viewer",
        name="Viewer",
        description="View-only permissions - can only view pages, no editing",
        pages=(("dashboard", "view"), ("students", "view"), ("soc", "view")),
    ),
    "api-developer": PermissionPreset(
        id="api-developer",
        name="API Developer",
        description="API developer permissions - can manage API keys",
        pages=(("dashboard", "view"), ("api-keys", "edit")),
    ),
}


def get_preset(preset_id: str) -> Optional[PermissionPreset]:
    return PERMISSION_PRESETS.get(preset_id)
