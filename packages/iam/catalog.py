"""Permission and role catalogs.

Catalogs are built once at process start and never change afterwards.
Policy lives in data: the built-in permissions, the per-role grants and
the role hierarchy below are plain tables, and ``CatalogLoader`` builds
the same structures from a dict or YAML file.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import ValidationError

from packages.iam.config import get_settings
from packages.iam.models import (
    ActionType,
    CatalogError,
    ConditionType,
    Permission,
    PermissionCondition,
    ResourceType,
    Role,
    RoleType,
)

logger = logging.getLogger(__name__)

# Grants every permission in the catalog
ALL_PERMISSIONS = "*"

SYSTEM_ROLE_EPOCH = datetime(2024, 1, 1, tzinfo=UTC)


class SystemRole:
    """Ids of the built-in system roles."""

    # Organization level roles
    ORGANIZATION_ADMIN = "roles/organization.admin"
    ORGANIZATION_VIEWER = "roles/organization.viewer"

    # User management roles
    USER_ADMIN = "roles/user.admin"
    USER_MANAGER = "roles/user.manager"
    USER_VIEWER = "roles/user.viewer"

    # Project roles
    PROJECT_OWNER = "roles/project.owner"
    PROJECT_EDITOR = "roles/project.editor"
    PROJECT_VIEWER = "roles/project.viewer"

    # Basic roles
    AUTHENTICATED_USER = "roles/authenticated.user"


@dataclass(frozen=True)
class Grant:
    """A permission granted by a role, optionally conditioned."""

    permission_id: str
    conditions: tuple[PermissionCondition, ...] = ()


@dataclass(frozen=True)
class RoleDefinition:
    """Catalog entry for a system role."""

    id: str
    name: str
    description: str = ""
    grants: tuple[Grant, ...] = field(default_factory=tuple)
    type: RoleType = RoleType.SYSTEM


# =============================================================================
# Built-in catalog data
# =============================================================================

SYSTEM_PERMISSIONS: tuple[Permission, ...] = (
    # Organization permissions
    Permission(
        id="organization.admin",
        name="Organization Administrator",
        description="Full administrative access to organization",
        resource=ResourceType.ORGANIZATION,
        action=ActionType.ADMIN,
    ),
    Permission(
        id="organization.read",
        name="Organization Reader",
        description="Read access to organization information",
        resource=ResourceType.ORGANIZATION,
        action=ActionType.READ,
    ),
    # User management permissions
    Permission(
        id="user.create",
        name="Create Users",
        description="Create new users in the system",
        resource=ResourceType.USER,
        action=ActionType.CREATE,
    ),
    Permission(
        id="user.read",
        name="Read Users",
        description="View user information",
        resource=ResourceType.USER,
        action=ActionType.READ,
    ),
    Permission(
        id="user.update",
        name="Update Users",
        description="Update user information",
        resource=ResourceType.USER,
        action=ActionType.UPDATE,
    ),
    Permission(
        id="user.delete",
        name="Delete Users",
        description="Delete users from the system",
        resource=ResourceType.USER,
        action=ActionType.DELETE,
    ),
    Permission(
        id="user.invite",
        name="Invite Users",
        description="Invite new users to the organization",
        resource=ResourceType.USER,
        action=ActionType.INVITE,
    ),
    Permission(
        id="user.assignRole",
        name="Assign Roles",
        description="Assign roles to users",
        resource=ResourceType.USER,
        action=ActionType.ASSIGN_ROLE,
    ),
    Permission(
        id="user.revokeRole",
        name="Revoke Roles",
        description="Revoke roles from users",
        resource=ResourceType.USER,
        action=ActionType.REVOKE_ROLE,
    ),
    # Project permissions
    Permission(
        id="project.create",
        name="Create Projects",
        description="Create new projects",
        resource=ResourceType.PROJECT,
        action=ActionType.CREATE,
    ),
    Permission(
        id="project.read",
        name="Read Projects",
        description="View project information",
        resource=ResourceType.PROJECT,
        action=ActionType.READ,
    ),
    Permission(
        id="project.update",
        name="Update Projects",
        description="Update project information",
        resource=ResourceType.PROJECT,
        action=ActionType.UPDATE,
    ),
    Permission(
        id="project.delete",
        name="Delete Projects",
        description="Delete projects",
        resource=ResourceType.PROJECT,
        action=ActionType.DELETE,
    ),
    Permission(
        id="project.manage",
        name="Manage Projects",
        description="Full management access to projects",
        resource=ResourceType.PROJECT,
        action=ActionType.MANAGE,
    ),
    # Role management permissions
    Permission(
        id="role.create",
        name="Create Roles",
        description="Create custom roles",
        resource=ResourceType.ROLE,
        action=ActionType.CREATE,
    ),
    Permission(
        id="role.read",
        name="Read Roles",
        description="View role information",
        resource=ResourceType.ROLE,
        action=ActionType.READ,
    ),
    Permission(
        id="role.update",
        name="Update Roles",
        description="Update role information",
        resource=ResourceType.ROLE,
        action=ActionType.UPDATE,
    ),
    Permission(
        id="role.delete",
        name="Delete Roles",
        description="Delete custom roles",
        resource=ResourceType.ROLE,
        action=ActionType.DELETE,
    ),
    # Audit permissions
    Permission(
        id="audit.read",
        name="Read Audit Logs",
        description="View audit logs",
        resource=ResourceType.AUDIT,
        action=ActionType.VIEW_AUDIT,
    ),
    # Billing permissions
    Permission(
        id="billing.read",
        name="Read Billing",
        description="View billing information",
        resource=ResourceType.BILLING,
        action=ActionType.READ,
    ),
    Permission(
        id="billing.update",
        name="Update Billing",
        description="Update billing information",
        resource=ResourceType.BILLING,
        action=ActionType.UPDATE,
    ),
)

_SAME_DEPARTMENT = PermissionCondition(
    type=ConditionType.DEPARTMENT_MEMBER.value,
    value="same_department",
)
_SELF_OWNED = PermissionCondition(
    type=ConditionType.RESOURCE_OWNER.value,
    value="self",
)

SYSTEM_ROLE_DEFINITIONS: tuple[RoleDefinition, ...] = (
    RoleDefinition(
        id=SystemRole.ORGANIZATION_ADMIN,
        name="Organization Administrator",
        description="Full access to organization and all resources",
        grants=(Grant(ALL_PERMISSIONS),),
    ),
    RoleDefinition(
        id=SystemRole.ORGANIZATION_VIEWER,
        name="Organization Viewer",
        description="View access to organization resources",
    ),
    RoleDefinition(
        id=SystemRole.USER_ADMIN,
        name="User Administrator",
        description="Full access to user management",
        grants=(
            Grant("user.create"),
            Grant("user.read"),
            Grant("user.update"),
            Grant("user.delete"),
            Grant("user.invite"),
            Grant("user.assignRole"),
            Grant("user.revokeRole"),
            Grant("role.read"),
        ),
    ),
    RoleDefinition(
        id=SystemRole.USER_MANAGER,
        name="User Manager",
        description="Manage users within department",
        grants=(
            Grant("user.read"),
            Grant("user.update"),
            Grant("user.invite", (_SAME_DEPARTMENT,)),
        ),
    ),
    RoleDefinition(
        id=SystemRole.USER_VIEWER,
        name="User Viewer",
        description="View user information",
        grants=(Grant("user.read"),),
    ),
    RoleDefinition(
        id=SystemRole.PROJECT_OWNER,
        name="Project Owner",
        description="Full access to project resources",
        grants=(
            Grant("project.create"),
            Grant("project.read"),
            Grant("project.update"),
            Grant("project.delete"),
            Grant("project.manage"),
        ),
    ),
    RoleDefinition(
        id=SystemRole.PROJECT_EDITOR,
        name="Project Editor",
        description="Edit access to project resources",
        grants=(Grant("project.read"), Grant("project.update")),
    ),
    RoleDefinition(
        id=SystemRole.PROJECT_VIEWER,
        name="Project Viewer",
        description="View access to project resources",
        grants=(Grant("project.read"),),
    ),
    RoleDefinition(
        id=SystemRole.AUTHENTICATED_USER,
        name="Authenticated User",
        description="Basic authenticated user permissions",
        grants=(Grant("user.read", (_SELF_OWNED,)),),
    ),
)

# Parent role -> subordinate roles
SYSTEM_ROLE_HIERARCHY: dict[str, tuple[str, ...]] = {
    SystemRole.ORGANIZATION_ADMIN: (SystemRole.USER_ADMIN, SystemRole.PROJECT_OWNER),
    SystemRole.USER_ADMIN: (SystemRole.USER_MANAGER, SystemRole.USER_VIEWER),
    SystemRole.PROJECT_OWNER: (SystemRole.PROJECT_EDITOR, SystemRole.PROJECT_VIEWER),
    SystemRole.USER_MANAGER: (SystemRole.USER_VIEWER, SystemRole.AUTHENTICATED_USER),
    SystemRole.PROJECT_EDITOR: (SystemRole.PROJECT_VIEWER, SystemRole.AUTHENTICATED_USER),
    SystemRole.USER_VIEWER: (SystemRole.AUTHENTICATED_USER,),
    SystemRole.PROJECT_VIEWER: (SystemRole.AUTHENTICATED_USER,),
}


# =============================================================================
# Catalogs
# =============================================================================


class PermissionCatalog:
    """Read-only registry of permission definitions keyed by id."""

    def __init__(self, permissions: Iterable[Permission]):
        by_id: dict[str, Permission] = {}
        for permission in permissions:
            if permission.id in by_id:
                raise CatalogError(f"Duplicate permission id: {permission.id}")
            by_id[permission.id] = permission
        self._permissions: Mapping[str, Permission] = MappingProxyType(by_id)

    def __contains__(self, permission_id: object) -> bool:
        return permission_id in self._permissions

    def __iter__(self) -> Iterator[Permission]:
        return iter(self._permissions.values())

    def __len__(self) -> int:
        return len(self._permissions)

    def get(self, permission_id: str) -> Permission | None:
        """Look up a permission by id."""
        return self._permissions.get(permission_id)

    def require(self, permission_id: str) -> Permission:
        """Look up a permission by id, failing on unknown ids."""
        permission = self._permissions.get(permission_id)
        if permission is None:
            raise CatalogError(f"Unknown permission id: {permission_id}")
        return permission

    def find(self, requested: str) -> Permission | None:
        """Look up a permission by id or display name."""
        if requested in self._permissions:
            return self._permissions[requested]
        for permission in self._permissions.values():
            if permission.matches(requested):
                return permission
        return None

    def all(self) -> list[Permission]:
        """Return every permission in catalog order."""
        return list(self._permissions.values())


class RoleCatalog:
    """System roles, their permission sets and the role hierarchy.

    The hierarchy maps a role to its subordinate roles. It is expected
    to be acyclic, but traversals keep a visited set so a malformed
    hierarchy cannot loop forever.
    """

    def __init__(
        self,
        permission_catalog: PermissionCatalog,
        roles: Iterable[RoleDefinition],
        hierarchy: Mapping[str, Iterable[str]] | None = None,
    ):
        self._permission_catalog = permission_catalog

        definitions: dict[str, RoleDefinition] = {}
        for definition in roles:
            if definition.id in definitions:
                raise CatalogError(f"Duplicate role id: {definition.id}")
            definitions[definition.id] = definition

        children: dict[str, tuple[str, ...]] = {}
        parents: dict[str, list[str]] = {}
        for parent_id, child_ids in (hierarchy or {}).items():
            child_ids = tuple(child_ids)
            for role_id in (parent_id, *child_ids):
                if role_id not in definitions:
                    raise CatalogError(f"Unknown role in hierarchy: {role_id}")
            children[parent_id] = child_ids
            for child_id in child_ids:
                parents.setdefault(child_id, []).append(parent_id)

        self._children: Mapping[str, tuple[str, ...]] = MappingProxyType(children)
        self._parents: Mapping[str, tuple[str, ...]] = MappingProxyType(
            {role_id: tuple(ids) for role_id, ids in parents.items()}
        )

        role_permissions: dict[str, tuple[Permission, ...]] = {}
        system_roles: dict[str, Role] = {}
        for role_id, definition in definitions.items():
            permissions = self._resolve_grants(definition)
            role_permissions[role_id] = permissions
            system_roles[role_id] = Role(
                id=role_id,
                name=definition.name,
                description=definition.description,
                type=definition.type,
                permissions=list(permissions),
                inherits_from=list(self._parents.get(role_id, ())),
                is_system_role=True,
                created_at=SYSTEM_ROLE_EPOCH,
                updated_at=SYSTEM_ROLE_EPOCH,
            )

        self._role_permissions: Mapping[str, tuple[Permission, ...]] = MappingProxyType(
            role_permissions
        )
        self._roles: Mapping[str, Role] = MappingProxyType(system_roles)

        logger.info(
            "RoleCatalog initialized with %d system roles and %d permissions",
            len(self._roles), len(permission_catalog)
        )

    def _resolve_grants(self, definition: RoleDefinition) -> tuple[Permission, ...]:
        """Expand a role's grants into permission objects."""
        permissions: list[Permission] = []
        for grant in definition.grants:
            if grant.permission_id == ALL_PERMISSIONS:
                permissions.extend(self._permission_catalog.all())
                continue
            try:
                permission = self._permission_catalog.require(grant.permission_id)
            except CatalogError as exc:
                raise CatalogError(
                    f"Role {definition.id} grants unknown permission: {grant.permission_id}"
                ) from exc
            if grant.conditions:
                permission = permission.model_copy(
                    update={"conditions": list(grant.conditions)}
                )
            permissions.append(permission)
        return tuple(permissions)

    @property
    def permission_catalog(self) -> PermissionCatalog:
        return self._permission_catalog

    def get_system_role_permissions(self, role_id: str) -> list[Permission]:
        """Get the permissions of a system role.

        Unknown and custom role ids return an empty list; custom roles
        are resolved by the caller-supplied lookup, not by the catalog.
        """
        return list(self._role_permissions.get(role_id, ()))

    def get_role(self, role_id: str) -> Role | None:
        """Look up a system role by id."""
        return self._roles.get(role_id)

    def get_system_roles(self) -> list[Role]:
        """Return every system role in catalog order."""
        return list(self._roles.values())

    def is_system_role(self, role_id: str) -> bool:
        return role_id in self._roles

    def get_role_name(self, role_id: str) -> str:
        """Get a role's display name, falling back to its id."""
        role = self._roles.get(role_id)
        return role.name if role else role_id

    def get_role_hierarchy(self) -> dict[str, list[str]]:
        """Return a copy of the parent -> subordinate roles map."""
        return {role_id: list(child_ids) for role_id, child_ids in self._children.items()}

    def get_subordinate_roles(self, role_id: str) -> list[str]:
        """Return every role below ``role_id`` (breadth-first)."""
        found: list[str] = []
        visited = {role_id}
        queue = deque([role_id])
        while queue:
            current = queue.popleft()
            for child_id in self._children.get(current, ()):
                if child_id not in visited:
                    visited.add(child_id)
                    found.append(child_id)
                    queue.append(child_id)
        return found

    def inherits_from(self, child_role_id: str, parent_role_id: str) -> bool:
        """Check if ``parent_role_id`` is reachable upward from ``child_role_id``.

        A role inherits from itself.
        """
        if child_role_id == parent_role_id:
            return True

        visited = {child_role_id}
        queue = deque([child_role_id])
        while queue:
            current = queue.popleft()
            for parent_id in self._parents.get(current, ()):
                if parent_id == parent_role_id:
                    return True
                if parent_id not in visited:
                    visited.add(parent_id)
                    queue.append(parent_id)
        return False


# =============================================================================
# Loading
# =============================================================================


class CatalogLoader:
    """Build catalogs from dictionaries or YAML files.

    Expected structure::

        permissions:
          - {id: user.read, name: Read Users, resource: user, action: read}
        roles:
          - id: roles/user.viewer
            name: User Viewer
            grants:
              - user.read
              - permission: user.invite
                conditions: [{type: department_member, value: same_department}]
        hierarchy:
          roles/user.admin: [roles/user.viewer]
    """

    def load_from_dict(self, raw: dict[str, Any]) -> RoleCatalog:
        """Load a role catalog from a dictionary."""
        if not raw:
            raise CatalogError("Catalog data is empty")

        try:
            permissions = [
                Permission.model_validate(entry) for entry in raw.get("permissions", [])
            ]
        except ValidationError as exc:
            raise CatalogError(f"Invalid permission definition: {exc}") from exc

        permission_catalog = PermissionCatalog(permissions)
        roles = [self._parse_role(data) for data in raw.get("roles", [])]
        hierarchy = raw.get("hierarchy") or {}

        return RoleCatalog(permission_catalog, roles, hierarchy)

    def load_from_file(self, path: str | Path) -> RoleCatalog:
        """Load a role catalog from a YAML file."""
        path = Path(path)
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        logger.info("Loading IAM catalog from %s", path)
        return self.load_from_dict(raw or {})

    def _parse_role(self, data: dict[str, Any]) -> RoleDefinition:
        """Parse a single role from dict."""
        try:
            role_id = data["id"]
        except KeyError as exc:
            raise CatalogError("Role definition is missing 'id'") from exc

        grants = []
        for grant_data in data.get("grants", []):
            if isinstance(grant_data, str):
                grants.append(Grant(grant_data))
                continue
            try:
                conditions = tuple(
                    PermissionCondition.model_validate(cond)
                    for cond in grant_data.get("conditions", [])
                )
                grants.append(Grant(grant_data["permission"], conditions))
            except (KeyError, ValidationError) as exc:
                raise CatalogError(f"Invalid grant in role {role_id}: {grant_data!r}") from exc

        try:
            role_type = RoleType(data.get("type", RoleType.SYSTEM.value))
        except ValueError as exc:
            raise CatalogError(f"Invalid type for role {role_id}: {data.get('type')!r}") from exc

        return RoleDefinition(
            id=role_id,
            name=data.get("name", role_id),
            description=data.get("description", ""),
            grants=tuple(grants),
            type=role_type,
        )


def build_system_catalog() -> RoleCatalog:
    """Build the catalog of built-in permissions and system roles."""
    return RoleCatalog(
        PermissionCatalog(SYSTEM_PERMISSIONS),
        SYSTEM_ROLE_DEFINITIONS,
        SYSTEM_ROLE_HIERARCHY,
    )


# Singleton instance
_default_catalog: RoleCatalog | None = None


def get_default_catalog() -> RoleCatalog:
    """Get the role catalog singleton.

    Uses ``IAM_CATALOG_PATH`` when set, the built-in catalog otherwise.
    """
    global _default_catalog
    if _default_catalog is None:
        settings = get_settings()
        if settings.catalog_path:
            _default_catalog = CatalogLoader().load_from_file(settings.catalog_path)
        else:
            _default_catalog = build_system_catalog()
    return _default_catalog
