"""
Page permission registry.

Each UI page maps to the API calls it needs. Holding ``page:<key>:view``
grants the page's view APIs; ``page:<key>:edit`` grants both its view and
edit APIs. Path patterns use ``:param`` for a single path segment.
"""
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Literal

PageAction = Literal["view", "edit"]


@dataclass(frozen=True)
class ApiDescriptor:
    resource: str
    action: str
    method: str
    path: str

    @property
    def permission_name(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass(frozen=True)
class PagePermission:
    page: str
    name: str
    category: str
    view_apis: tuple[ApiDescriptor, ...] = field(default_factory=tuple)
    edit_apis: tuple[ApiDescriptor, ...] = field(default_factory=tuple)


def _apis(resource: str, *specs: tuple[str, str, str]) -> tuple[ApiDescriptor, ...]:
    return tuple(ApiDescriptor(resource, action, method, path) for action, method, path in specs)


PAGE_PERMISSIONS: dict[str, PagePermission] = {
    "dashboard": PagePermission(
        page="dashboard",
        name="Dashboard",
        category="general",
        view_apis=(
            ApiDescriptor("dashboard", "read", "GET", "/api/auth/me"),
            *_apis(
                "search",
                ("read", "GET", "/api/search/pages"),
                ("read", "GET", "/api/search/pages/search"),
                ("read", "GET", "/api/search/pages/categories"),
            ),
        ),
    ),
    "students": PagePermission(
        page="students",
        name="Students",
        category="academic",
        view_apis=(
            *_apis(
                "students",
                ("read", "GET", "/api/students"),
                ("read", "GET", "/api/students/:id"),
                ("read", "GET", "/api/students/id-number/:idNumber"),
            ),
            ApiDescriptor("tracks", "read", "GET", "/api/tracks"),
            *_apis("cohorts", ("read", "GET", "/api/cohorts"), ("read", "GET", "/api/cohorts/:id")),
        ),
        edit_apis=(
            *_apis(
                "students",
                ("create", "POST", "/api/students"),
                ("create", "POST", "/api/students/upload"),
                ("update", "PUT", "/api/students/:id"),
                ("delete", "DELETE", "/api/students/:id"),
                ("delete", "DELETE", "/api/students/clear-all"),
                ("update", "POST", "/api/students/promote-all"),
                ("update", "POST", "/api/students/cohorts/:cohortId/promote"),
            ),
            *_apis(
                "tracks",
                ("read", "GET", "/api/tracks/:id"),
                ("create", "POST", "/api/tracks"),
                ("update", "PUT", "/api/tracks/:id"),
                ("delete", "DELETE", "/api/tracks/:id"),
            ),
            *_apis(
                "cohorts",
                ("update", "PUT", "/api/cohorts/:id"),
                ("update", "POST", "/api/cohorts/refresh"),
            ),
        ),
    ),
    "resources": PagePermission(
        page="resources",
        name="Resources",
        category="management",
        view_apis=(
            *_apis("soldiers", ("read", "GET", "/api/soldiers"), ("read", "GET", "/api/soldiers/:id")),
            *_apis(
                "departments",
                ("read", "GET", "/api/departments"),
                ("read", "GET", "/api/departments/:id"),
                ("read", "GET", "/api/departments/:id/commanders"),
            ),
            *_apis(
                "roles",
                ("read", "GET", "/api/roles"),
                ("read", "GET", "/api/roles/:id"),
                ("read", "GET", "/api/roles/:id/permissions"),
            ),
            *_apis("rooms", ("read", "GET", "/api/rooms"), ("read", "GET", "/api/rooms/:id")),
            *_apis(
                "permissions",
                ("read", "GET", "/api/permissions/pages"),
                ("read", "GET", "/api/permissions/users/:userId/page-permissions"),
                ("read", "GET", "/api/permissions"),
                ("read", "GET", "/api/permissions/:id"),
            ),
            *_apis("auth", ("read", "GET", "/api/auth/created"), ("read", "GET", "/api/auth/pending")),
        ),
        edit_apis=(
            *_apis(
                "soldiers",
                ("create", "POST", "/api/soldiers"),
                ("update", "PUT", "/api/soldiers/:id"),
                ("delete", "DELETE", "/api/soldiers/:id"),
            ),
            *_apis(
                "departments",
                ("create", "POST", "/api/departments"),
                ("update", "PUT", "/api/departments/:id"),
                ("delete", "DELETE", "/api/departments/:id"),
            ),
            *_apis(
                "rooms",
                ("create", "POST", "/api/rooms"),
                ("update", "PUT", "/api/rooms/:id"),
                ("delete", "DELETE", "/api/rooms/:id"),
            ),
            *_apis(
                "roles",
                ("create", "POST", "/api/roles"),
                ("update", "PUT", "/api/roles/:id"),
                ("delete", "DELETE", "/api/roles/:id"),
                ("update", "POST", "/api/roles/:id/permissions/grant"),
                ("update", "POST", "/api/roles/:id/permissions/revoke"),
            ),
            *_apis(
                "permissions",
                ("create", "POST", "/api/permissions"),
                ("read", "GET", "/api/permissions/users/:userId"),
                ("update", "POST", "/api/permissions/users/:userId/grant"),
                ("update", "POST", "/api/permissions/users/:userId/revoke"),
                ("update", "POST", "/api/permissions/users/:userId/grant-page"),
                ("update", "POST", "/api/permissions/users/:userId/revoke-page"),
                ("update", "POST", "/api/permissions/roles/:roleId/grant"),
                ("update", "POST", "/api/permissions/roles/:roleId/revoke"),
                ("update", "POST", "/api/permissions/roles/:roleId/grant-page"),
                ("update", "POST", "/api/permissions/roles/:roleId/revoke-page"),
                ("read", "GET", "/api/permissions/roles/:roleId/page-permissions"),
                ("read", "GET", "/api/permissions/:permissionId/users"),
            ),
            *_apis(
                "auth",
                ("create", "POST", "/api/auth/create-user"),
                ("update", "POST", "/api/auth/:id/approve"),
                ("update", "POST", "/api/auth/:id/reject"),
                ("update", "POST", "/api/auth/:id/reset-password"),
                ("update", "PUT", "/api/auth/:id"),
                ("delete", "DELETE", "/api/auth/:id"),
            ),
        ),
    ),
    "soc": PagePermission(
        page="soc",
        name="Security Operations Center",
        category="security",
        view_apis=_apis(
            "soc",
            ("read", "GET", "/api/soc/audit-logs"),
            ("read", "GET", "/api/soc/stats"),
            ("read", "GET", "/api/soc/incidents"),
            ("read", "GET", "/api/soc/alerts"),
            ("read", "GET", "/api/soc/users/:userId/activity"),
            ("read", "GET", "/api/soc/resources/:resource/:resourceId"),
            ("read", "GET", "/api/soc/blocked-ips"),
            ("read", "GET", "/api/soc/trusted-users"),
        ),
        edit_apis=_apis(
            "soc",
            ("update", "PUT", "/api/soc/incidents/:id"),
            ("update", "POST", "/api/soc/incidents/:id/mark"),
            ("update", "POST", "/api/soc/audit-logs/:id/pin"),
            ("update", "DELETE", "/api/soc/audit-logs/:id/pin"),
            ("update", "POST", "/api/soc/blocked-ips"),
            ("update", "DELETE", "/api/soc/blocked-ips/:ipAddress"),
            ("update", "POST", "/api/soc/trusted-users"),
            ("update", "DELETE", "/api/soc/trusted-users/:id"),
        ),
    ),
    "api-keys": PagePermission(
        page="api-keys",
        name="API Keys",
        category="security",
        view_apis=_apis(
            "api-keys",
            ("read", "GET", "/api/api-keys"),
            ("read", "GET", "/api/api-keys/all"),
            ("read", "GET", "/api/api-keys/:id"),
        ),
        edit_apis=_apis(
            "api-keys",
            ("create", "POST", "/api/api-keys"),
            ("delete", "DELETE", "/api/api-keys/:id"),
        ),
    ),
    "settings": PagePermission(
        page="settings",
        name="Settings",
        category="general",
        view_apis=(ApiDescriptor("auth", "read", "GET", "/api/auth/me"),),
    ),
    "tracks": PagePermission(
        page="tracks",
        name="Tracks",
        category="academic",
        view_apis=_apis("tracks", ("read", "GET", "/api/tracks"), ("read", "GET", "/api/tracks/:id")),
        edit_apis=_apis(
            "tracks",
            ("create", "POST", "/api/tracks"),
            ("update", "PUT", "/api/tracks/:id"),
            ("delete", "DELETE", "/api/tracks/:id"),
        ),
    ),
    "cohorts": PagePermission(
        page="cohorts",
        name="Cohorts",
        category="academic",
        view_apis=_apis("cohorts", ("read", "GET", "/api/cohorts"), ("read", "GET", "/api/cohorts/:id")),
        edit_apis=_apis(
            "cohorts",
            ("create", "POST", "/api/cohorts"),
            ("update", "PUT", "/api/cohorts/:id"),
            ("update", "POST", "/api/cohorts/refresh"),
        ),
    ),
    "classes": PagePermission(
        page="classes",
        name="Classes",
        category="academic",
        view_apis=_apis("classes", ("read", "GET", "/api/classes"), ("read", "GET", "/api/classes/:id")),
        edit_apis=_apis(
            "classes",
            ("create", "POST", "/api/classes"),
            ("update", "PUT", "/api/classes/:id"),
            ("delete", "DELETE", "/api/classes/:id"),
        ),
    ),
    "student-exits": PagePermission(
        page="student-exits",
        name="Student Exits",
        category="academic",
        view_apis=_apis(
            "student-exits",
            ("read", "GET", "/api/student-exits"),
            ("read", "GET", "/api/student-exits/student/:studentId"),
        ),
        edit_apis=_apis(
            "student-exits",
            ("create", "POST", "/api/student-exits"),
            ("update", "PUT", "/api/student-exits/:studentId"),
        ),
    ),
}


def page_permission_name(page: str, action: PageAction) -> str:
    return f"page:{page}:{action}"


@lru_cache(maxsize=512)
def _compile_path(path: str) -> re.Pattern:
    pattern = re.sub(r":[^/]+", "[^/]+", path)
    return re.compile(f"^{pattern}$")


def matches_api_permission(api: ApiDescriptor, method: str, path: str) -> bool:
    if api.method != method.upper():
        return False
    return _compile_path(api.path).match(path) is not None


def normalize_api_path(path: str) -> str:
    """Strip query and trailing slash and make sure the path starts with /api."""
    path = path.split("?", 1)[0]
    if len(path) > 1:
        path = path.rstrip("/")
    if not path.startswith("/api"):
        path = "/api" + (path if path.startswith("/") else f"/{path}")
    return path


def get_api_permissions_for_page(page: str, action: PageAction) -> list[ApiDescriptor]:
    """APIs granted by a page permission, deduplicated by ``resource:action``."""
    page_permission = PAGE_PERMISSIONS.get(page)
    if page_permission is None:
        return []
    apis = page_permission.view_apis
    if action == "edit":
        apis = apis + page_permission.edit_apis
    unique: dict[str, ApiDescriptor] = {}
    for api in apis:
        unique.setdefault(api.permission_name, api)
    return list(unique.values())


def find_pages_for_request(method: str, path: str) -> list[tuple[str, PageAction]]:
    """Every (page, required action) whose API descriptors match the request."""
    matches: list[tuple[str, PageAction]] = []
    for key, page_permission in PAGE_PERMISSIONS.items():
        if any(matches_api_permission(api, method, path) for api in page_permission.view_apis):
            matches.append((key, "view"))
        if any(matches_api_permission(api, method, path) for api in page_permission.edit_apis):
            matches.append((key, "edit"))
    return matches
