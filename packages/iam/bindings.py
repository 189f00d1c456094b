"""Role binding management.

Pure transformations over a user's role bindings. Every operation
returns a new list; neither the user nor the bindings passed in are
modified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from uuid import uuid4

from packages.iam.catalog import RoleCatalog, SystemRole
from packages.iam.models import (
    BindingAction,
    CreateRoleBindingRequest,
    RoleBinding,
    UpdateRoleBindingRequest,
    User,
    ValidationResult,
)

logger = logging.getLogger(__name__)


def build_role_binding(
    request: CreateRoleBindingRequest,
    assigned_by: str,
    role_catalog: RoleCatalog,
    now: datetime | None = None,
) -> RoleBinding:
    """Create a new role binding from a request."""
    return RoleBinding(
        id=str(uuid4()),
        role_id=request.role_id,
        role_name=role_catalog.get_role_name(request.role_id),
        resource_type=request.resource_type,
        resource_id=request.resource_id,
        conditions=list(request.conditions or []),
        expires_at=request.expires_at,
        created_at=now or datetime.now(UTC),
        assigned_by=assigned_by,
    )


class RoleBindingManager:
    """Add, remove and update role bindings."""

    def __init__(
        self,
        role_catalog: RoleCatalog,
        clock: Callable[[], datetime] | None = None,
    ):
        self.role_catalog = role_catalog
        self._clock = clock or (lambda: datetime.now(UTC))

    # -- Queries ---------------------------------------------------------------

    def get_active_bindings(self, user: User, now: datetime | None = None) -> list[RoleBinding]:
        """Return the user's bindings that have not expired."""
        now = now or self._clock()
        return [binding for binding in user.role_bindings if binding.is_effective(now)]

    def has_role(self, user: User, role_id: str, now: datetime | None = None) -> bool:
        """Check if the user holds an effective binding to ``role_id``."""
        return any(b.role_id == role_id for b in self.get_active_bindings(user, now))

    def is_admin(self, user: User, now: datetime | None = None) -> bool:
        """Check if the user is an organization or user administrator."""
        now = now or self._clock()
        return self.has_role(user, SystemRole.ORGANIZATION_ADMIN, now) or self.has_role(
            user, SystemRole.USER_ADMIN, now
        )

    # -- Transformations -------------------------------------------------------

    def add_binding(
        self,
        bindings: Sequence[RoleBinding],
        request: CreateRoleBindingRequest,
        assigned_by: str,
        now: datetime | None = None,
    ) -> list[RoleBinding]:
        """Return ``bindings`` plus a new binding built from ``request``."""
        binding = build_role_binding(request, assigned_by, self.role_catalog, now or self._clock())
        logger.debug("Adding binding %s for role %s", binding.id, binding.role_id)
        return [*bindings, binding]

    def remove_binding(
        self,
        bindings: Sequence[RoleBinding],
        update: UpdateRoleBindingRequest,
    ) -> list[RoleBinding]:
        """Remove a binding by id, or by (role, resource type, resource id)."""
        if update.id:
            return [binding for binding in bindings if binding.id != update.id]

        return [
            binding for binding in bindings
            if binding.role_id != update.role_id
            or binding.resource_type != update.resource_type
            or binding.resource_id != update.resource_id
        ]

    def update_binding(
        self,
        bindings: Sequence[RoleBinding],
        update: UpdateRoleBindingRequest,
    ) -> list[RoleBinding]:
        """Replace the binding named by ``update.id``.

        Identity, creation time and assigner are preserved. Fields not
        supplied in ``update`` keep their value; fields supplied as
        ``None`` are cleared.
        """
        if not update.id:
            logger.warning("Ignoring binding update without id for role %s", update.role_id)
            return list(bindings)

        changes = update.patch()
        if "conditions" in changes and changes["conditions"] is None:
            changes["conditions"] = []
        changes["role_id"] = update.role_id
        changes["role_name"] = self.role_catalog.get_role_name(update.role_id)

        result = []
        found = False
        for binding in bindings:
            if binding.id == update.id:
                binding = binding.model_copy(update=changes)
                found = True
            result.append(binding)

        if not found:
            logger.warning("Binding to update not found: %s", update.id)
        return result

    def update_user_role_bindings(
        self,
        user: User,
        updates: Sequence[UpdateRoleBindingRequest],
        updated_by: str,
    ) -> list[RoleBinding]:
        """Apply add/remove/update instructions in order.

        Returns:
            New binding list; ``user.role_bindings`` is left untouched
        """
        now = self._clock()
        bindings: list[RoleBinding] = list(user.role_bindings)

        for update in updates:
            if update.action == BindingAction.ADD:
                bindings = self.add_binding(bindings, update.to_create_request(), updated_by, now)
            elif update.action == BindingAction.REMOVE:
                bindings = self.remove_binding(bindings, update)
            elif update.action == BindingAction.UPDATE:
                bindings = self.update_binding(bindings, update)

        logger.info(
            "Applied %d binding updates for user=%s by=%s (%d -> %d bindings)",
            len(updates), user.id, updated_by, len(user.role_bindings), len(bindings)
        )
        return bindings

    def validate_updates(
        self,
        user: User,
        updates: Sequence[UpdateRoleBindingRequest],
        now: datetime | None = None,
    ) -> ValidationResult:
        """Validate binding updates a user is about to apply to themselves."""
        errors: list[str] = []

        for update in updates:
            if not update.role_id.strip():
                errors.append("Role ID is required for each role binding")
            if update.action == BindingAction.UPDATE and not update.id:
                errors.append("Binding ID is required to update a role binding")

        removes_org_admin = any(
            update.action == BindingAction.REMOVE
            and update.role_id == SystemRole.ORGANIZATION_ADMIN
            for update in updates
        )
        if removes_org_admin and self.has_role(user, SystemRole.ORGANIZATION_ADMIN, now):
            errors.append("Cannot remove own organization admin role")

        return ValidationResult(is_valid=not errors, errors=errors)
