"""Role management.

Creates, validates and deletes custom roles, builds IAM-style policy
documents and decides which roles a principal may delegate.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from packages.iam.bindings import RoleBindingManager, build_role_binding
from packages.iam.catalog import RoleCatalog, SystemRole
from packages.iam.config import IAMSettings, get_settings
from packages.iam.models import (
    ActionType,
    CreateRoleBindingRequest,
    Permission,
    Policy,
    PolicyBinding,
    PolicyBindingRequest,
    PolicyCondition,
    ResourceType,
    Role,
    RoleBinding,
    RoleType,
    SystemRoleMutationError,
    User,
    ValidationResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegationRule:
    """Which roles holders of a given role may assign."""

    allow_all: bool = False
    allowed_roles: frozenset[str] = field(default_factory=frozenset)
    # Any role id not containing this marker may be assigned
    excluded_marker: str | None = None

    def permits(self, target_role_id: str) -> bool:
        if self.allow_all or target_role_id in self.allowed_roles:
            return True
        return self.excluded_marker is not None and self.excluded_marker not in target_role_id


# Assigner role -> delegation rule. Roles not listed cannot assign anything.
DELEGATION_TABLE: dict[str, DelegationRule] = {
    SystemRole.ORGANIZATION_ADMIN: DelegationRule(allow_all=True),
    SystemRole.USER_ADMIN: DelegationRule(excluded_marker="organization"),
    SystemRole.USER_MANAGER: DelegationRule(
        allowed_roles=frozenset({SystemRole.USER_VIEWER, SystemRole.AUTHENTICATED_USER})
    ),
}

_SLUG_PATTERN = re.compile(r"[^a-z0-9]")


def generate_role_id(name: str, now: datetime) -> str:
    """Derive a role id from a slugified name and a millisecond timestamp."""
    slug = _SLUG_PATTERN.sub("-", name.lower())
    return f"roles/{slug}-{int(now.timestamp() * 1000)}"


class RoleManager:
    """Custom role lifecycle, delegation and IAM policy synthesis.

    System roles have no lifecycle: updating or deleting one raises
    SystemRoleMutationError before anything is computed.
    """

    def __init__(
        self,
        role_catalog: RoleCatalog,
        binding_manager: RoleBindingManager | None = None,
        delegation_table: dict[str, DelegationRule] | None = None,
        settings: IAMSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.role_catalog = role_catalog
        self.binding_manager = binding_manager or RoleBindingManager(role_catalog, clock)
        self.delegation_table = DELEGATION_TABLE if delegation_table is None else delegation_table
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))

    # -- Custom roles ----------------------------------------------------------

    def create_custom_role(
        self,
        name: str,
        description: str,
        permissions: Sequence[Permission],
        organization_id: str | None = None,
        created_by: str | None = None,
    ) -> Role:
        """Create a custom role.

        The permissions are not validated here; call
        validate_role_permissions first where that matters.
        """
        now = self._clock()
        role = Role(
            id=generate_role_id(name, now),
            name=name,
            description=description,
            type=RoleType.CUSTOM,
            permissions=list(permissions),
            organization_id=organization_id,
            is_system_role=False,
            created_at=now,
            updated_at=now,
            created_by=created_by,
        )
        logger.info("Created custom role %s (%d permissions)", role.id, len(role.permissions))
        return role

    def create_role_from_template(
        self,
        template_role_id: str,
        name: str,
        description: str,
        organization_id: str | None = None,
        created_by: str | None = None,
    ) -> Role:
        """Create a custom role seeded with a system role's permissions."""
        permissions = self.role_catalog.get_system_role_permissions(template_role_id)
        if not permissions:
            logger.warning("Template role %s has no permissions", template_role_id)
        return self.create_custom_role(name, description, permissions, organization_id, created_by)

    def update_custom_role(
        self,
        role: Role,
        name: str | None = None,
        description: str | None = None,
        permissions: Sequence[Permission] | None = None,
    ) -> Role:
        """Return an updated copy of a custom role.

        Raises:
            SystemRoleMutationError: If ``role`` is a system role
        """
        if role.is_system_role:
            logger.error("Refusing to update system role %s", role.id)
            raise SystemRoleMutationError(role.id, "update")

        changes: dict = {"updated_at": self._clock()}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if permissions is not None:
            changes["permissions"] = list(permissions)

        logger.info("Updated custom role %s (%s)", role.id, ", ".join(sorted(changes)))
        return role.model_copy(update=changes)

    def delete_custom_role(self, role: Role) -> None:
        """Delete a custom role.

        Raises:
            SystemRoleMutationError: If ``role`` is a system role
        """
        if role.is_system_role:
            logger.error("Refusing to delete system role %s", role.id)
            raise SystemRoleMutationError(role.id, "delete")

        logger.info("Deleted custom role %s", role.id)

    def validate_role_permissions(
        self,
        permissions: Sequence[Permission],
        role_type: RoleType,
    ) -> ValidationResult:
        """Validate the permission set of a role.

        Rules:
        - at least one permission
        - admin-action permissions cannot be bundled with other actions
        - custom roles cannot reach organization-level permissions
        """
        errors: list[str] = []

        if not permissions:
            errors.append("Role must have at least one permission")

        admin_permissions = [p for p in permissions if p.action == ActionType.ADMIN]
        specific_permissions = [p for p in permissions if p.action != ActionType.ADMIN]
        if admin_permissions and specific_permissions:
            errors.append("Cannot mix admin permissions with specific permissions")

        if role_type == RoleType.CUSTOM:
            org_permissions = [
                p for p in permissions
                if p.resource == ResourceType.ORGANIZATION
                or "organization" in p.id.lower()
                or "organization" in p.name.lower()
            ]
            if org_permissions:
                errors.append("Custom roles cannot have organization-level permissions")

        return ValidationResult(is_valid=not errors, errors=errors)

    # -- System roles and hierarchy -------------------------------------------

    def get_system_roles(self) -> list[Role]:
        return self.role_catalog.get_system_roles()

    def get_system_role_permissions(self, role_id: str) -> list[Permission]:
        return self.role_catalog.get_system_role_permissions(role_id)

    def get_permissions_for_roles(self, role_ids: Iterable[str]) -> list[Permission]:
        """Get the union of several system roles' permissions, deduplicated by id."""
        permissions: dict[str, Permission] = {}
        for role_id in role_ids:
            for permission in self.role_catalog.get_system_role_permissions(role_id):
                permissions.setdefault(permission.id, permission)
        return list(permissions.values())

    def get_role_hierarchy(self) -> dict[str, list[str]]:
        return self.role_catalog.get_role_hierarchy()

    def inherits_from(self, child_role_id: str, parent_role_id: str) -> bool:
        return self.role_catalog.inherits_from(child_role_id, parent_role_id)

    # -- Delegation ------------------------------------------------------------

    def can_assign_role(self, assigner_role_ids: Iterable[str], target_role_id: str) -> bool:
        """Check if holders of ``assigner_role_ids`` may assign ``target_role_id``."""
        for role_id in assigner_role_ids:
            rule = self.delegation_table.get(role_id)
            if rule is not None and rule.permits(target_role_id):
                return True
        return False

    def get_available_roles(self, user: User) -> list[str]:
        """Get the system role ids the user may assign to others."""
        assigner_role_ids = {
            binding.role_id for binding in self.binding_manager.get_active_bindings(user)
        }
        return [
            role.id for role in self.role_catalog.get_system_roles()
            if self.can_assign_role(assigner_role_ids, role.id)
        ]

    def create_role_binding(
        self,
        request: CreateRoleBindingRequest,
        assigned_by: str,
    ) -> RoleBinding:
        """Create the binding that assigns a role to a user."""
        binding = build_role_binding(request, assigned_by, self.role_catalog, self._clock())
        logger.info(
            "Created binding %s: role=%s scope=%s:%s by=%s",
            binding.id, binding.role_id,
            binding.resource_type.value if binding.resource_type else None,
            binding.resource_id, assigned_by
        )
        return binding

    # -- Policies --------------------------------------------------------------

    def create_iam_policy(self, bindings: Sequence[PolicyBindingRequest]) -> Policy:
        """Build an IAM-style policy document.

        A resource condition is attached only when both resource type
        and resource id are given. Its expression is opaque text.
        """
        policy_bindings = []
        for binding in bindings:
            condition = None
            if binding.resource_type and binding.resource_id:
                condition = PolicyCondition(
                    title="Resource Access",
                    description=f"Access to {binding.resource_type}:{binding.resource_id}",
                    expression=(
                        f'resource.type == "{binding.resource_type}" '
                        f'&& resource.id == "{binding.resource_id}"'
                    ),
                )
            policy_bindings.append(PolicyBinding(
                role=binding.role_id,
                members=list(binding.members),
                condition=condition,
            ))

        return Policy(version=self.settings.policy_version, bindings=policy_bindings)
