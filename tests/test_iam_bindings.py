"""Tests for role binding management."""

from datetime import UTC, datetime, timedelta

import pytest

from packages.iam.bindings import RoleBindingManager, build_role_binding
from packages.iam.catalog import SystemRole, build_system_catalog
from packages.iam.models import (
    BindingAction,
    BindingCondition,
    ConditionType,
    CreateRoleBindingRequest,
    ResourceType,
    RoleBinding,
    UpdateRoleBindingRequest,
    User,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def manager() -> RoleBindingManager:
    """Binding manager with a frozen clock."""
    return RoleBindingManager(build_system_catalog(), clock=lambda: NOW)


@pytest.fixture
def user() -> User:
    """User with a global viewer binding and a project-scoped binding."""
    return User(
        id="u1",
        role_bindings=[
            RoleBinding(
                id="b-viewer",
                role_id=SystemRole.USER_VIEWER,
                role_name="User Viewer",
                created_at=NOW - timedelta(days=30),
                assigned_by="admin",
            ),
            RoleBinding(
                id="b-project",
                role_id=SystemRole.PROJECT_EDITOR,
                role_name="Project Editor",
                resource_type=ResourceType.PROJECT,
                resource_id="p1",
                expires_at=NOW + timedelta(days=7),
                created_at=NOW - timedelta(days=1),
                assigned_by="admin",
            ),
        ],
    )


# ============================================================================
# Queries
# ============================================================================

class TestActiveBindings:
    """Test expiry filtering."""

    def test_expiry_boundary(self, manager):
        """A binding expiring exactly now is no longer active."""
        user = User(
            id="u1",
            role_bindings=[
                RoleBinding(id="expired", role_id=SystemRole.USER_VIEWER, expires_at=NOW),
                RoleBinding(
                    id="alive",
                    role_id=SystemRole.USER_VIEWER,
                    expires_at=NOW + timedelta(microseconds=1),
                ),
                RoleBinding(id="forever", role_id=SystemRole.USER_VIEWER),
            ],
        )

        active = manager.get_active_bindings(user)

        assert [b.id for b in active] == ["alive", "forever"]

    def test_explicit_now(self, manager, user):
        later = NOW + timedelta(days=8)
        assert [b.id for b in manager.get_active_bindings(user, later)] == ["b-viewer"]

    def test_has_role(self, manager, user):
        assert manager.has_role(user, SystemRole.PROJECT_EDITOR)
        assert not manager.has_role(user, SystemRole.PROJECT_EDITOR, NOW + timedelta(days=8))
        assert not manager.has_role(user, SystemRole.USER_ADMIN)

    def test_is_admin(self, manager, user):
        assert not manager.is_admin(user)
        admin = user.model_copy(update={
            "role_bindings": [RoleBinding(id="b-admin", role_id=SystemRole.USER_ADMIN)],
        })
        assert manager.is_admin(admin)


# ============================================================================
# Transformations
# ============================================================================

class TestAddBinding:
    """Test adding bindings."""

    def test_add_returns_new_list(self, manager, user):
        """The user's own binding list is never modified."""
        original = list(user.role_bindings)
        updates = [
            UpdateRoleBindingRequest(
                role_id=SystemRole.PROJECT_VIEWER,
                resource_type=ResourceType.PROJECT,
                resource_id="p2",
                action=BindingAction.ADD,
            ),
        ]

        bindings = manager.update_user_role_bindings(user, updates, "admin-1")

        assert user.role_bindings == original
        assert len(bindings) == 3
        added = bindings[-1]
        assert added.role_id == SystemRole.PROJECT_VIEWER
        assert added.role_name == "Project Viewer"
        assert added.resource_type == ResourceType.PROJECT
        assert added.resource_id == "p2"
        assert added.assigned_by == "admin-1"
        assert added.created_at == NOW
        assert added.conditions == []
        assert added.id not in {"b-viewer", "b-project"}

    def test_custom_role_name_falls_back_to_id(self, manager):
        binding = build_role_binding(
            CreateRoleBindingRequest(role_id="roles/auditors-1700000000000"),
            "admin-1",
            manager.role_catalog,
            NOW,
        )
        assert binding.role_name == "roles/auditors-1700000000000"
        assert binding.is_global

    def test_binding_ids_are_unique(self, manager):
        request = CreateRoleBindingRequest(role_id=SystemRole.USER_VIEWER)
        first = build_role_binding(request, "a", manager.role_catalog, NOW)
        second = build_role_binding(request, "a", manager.role_catalog, NOW)
        assert first.id != second.id


class TestRemoveBinding:
    """Test removing bindings."""

    def test_remove_by_id(self, manager, user):
        updates = [
            UpdateRoleBindingRequest(
                id="b-project", role_id=SystemRole.PROJECT_EDITOR, action=BindingAction.REMOVE
            ),
        ]
        bindings = manager.update_user_role_bindings(user, updates, "admin-1")
        assert [b.id for b in bindings] == ["b-viewer"]

    def test_remove_by_role_and_scope(self, manager, user):
        """Without an id, role and scope must all match."""
        wrong_scope = UpdateRoleBindingRequest(
            role_id=SystemRole.PROJECT_EDITOR,
            resource_type=ResourceType.PROJECT,
            resource_id="p9",
            action=BindingAction.REMOVE,
        )
        right_scope = UpdateRoleBindingRequest(
            role_id=SystemRole.PROJECT_EDITOR,
            resource_type=ResourceType.PROJECT,
            resource_id="p1",
            action=BindingAction.REMOVE,
        )

        assert len(manager.update_user_role_bindings(user, [wrong_scope], "admin-1")) == 2
        remaining = manager.update_user_role_bindings(user, [right_scope], "admin-1")
        assert [b.id for b in remaining] == ["b-viewer"]

    def test_remove_global_binding(self, manager, user):
        update = UpdateRoleBindingRequest(role_id=SystemRole.USER_VIEWER, action=BindingAction.REMOVE)
        remaining = manager.update_user_role_bindings(user, [update], "admin-1")
        assert [b.id for b in remaining] == ["b-project"]


class TestUpdateBinding:
    """Test in-place binding updates."""

    def test_identity_preserved(self, manager, user):
        update = UpdateRoleBindingRequest(
            id="b-project",
            role_id=SystemRole.PROJECT_VIEWER,
            resource_type=ResourceType.PROJECT,
            resource_id="p2",
            action=BindingAction.UPDATE,
        )

        bindings = manager.update_user_role_bindings(user, [update], "admin-2")
        updated = bindings[1]

        assert updated.id == "b-project"
        assert updated.role_id == SystemRole.PROJECT_VIEWER
        assert updated.role_name == "Project Viewer"
        assert updated.resource_id == "p2"
        assert updated.created_at == NOW - timedelta(days=1)
        assert updated.assigned_by == "admin"

    def test_omitted_fields_are_kept(self, manager, user):
        """Fields not supplied in the update keep their value."""
        update = UpdateRoleBindingRequest(
            id="b-project", role_id=SystemRole.PROJECT_EDITOR, action=BindingAction.UPDATE
        )
        updated = manager.update_user_role_bindings(user, [update], "admin-2")[1]

        assert updated.resource_type == ResourceType.PROJECT
        assert updated.resource_id == "p1"
        assert updated.expires_at == NOW + timedelta(days=7)

    def test_explicit_none_clears(self, manager, user):
        """Fields supplied as None are cleared."""
        update = UpdateRoleBindingRequest(
            id="b-project",
            role_id=SystemRole.PROJECT_EDITOR,
            expires_at=None,
            conditions=None,
            action=BindingAction.UPDATE,
        )
        updated = manager.update_user_role_bindings(user, [update], "admin-2")[1]

        assert updated.expires_at is None
        assert updated.conditions == []
        assert updated.resource_id == "p1"

    def test_conditions_replaced(self, manager, user):
        update = UpdateRoleBindingRequest(
            id="b-viewer",
            role_id=SystemRole.USER_VIEWER,
            conditions=[BindingCondition(type=ConditionType.MFA_REQUIRED)],
            action=BindingAction.UPDATE,
        )
        updated = manager.update_user_role_bindings(user, [update], "admin-2")[0]
        assert [c.type for c in updated.conditions] == ["mfa_required"]

    def test_unknown_id_is_ignored(self, manager, user):
        update = UpdateRoleBindingRequest(
            id="missing", role_id=SystemRole.USER_ADMIN, action=BindingAction.UPDATE
        )
        assert manager.update_user_role_bindings(user, [update], "admin-2") == user.role_bindings

    def test_original_binding_untouched(self, manager, user):
        update = UpdateRoleBindingRequest(
            id="b-project", role_id=SystemRole.PROJECT_OWNER, action=BindingAction.UPDATE
        )
        manager.update_user_role_bindings(user, [update], "admin-2")
        assert user.role_bindings[1].role_id == SystemRole.PROJECT_EDITOR


class TestUpdateSequence:
    def test_updates_apply_in_order(self, manager, user):
        updates = [
            UpdateRoleBindingRequest(role_id=SystemRole.USER_ADMIN, action=BindingAction.ADD),
            UpdateRoleBindingRequest(role_id=SystemRole.USER_VIEWER, action=BindingAction.REMOVE),
            UpdateRoleBindingRequest(
                id="b-project",
                role_id=SystemRole.PROJECT_OWNER,
                action=BindingAction.UPDATE,
            ),
        ]

        bindings = manager.update_user_role_bindings(user, updates, "admin-1")

        assert [b.role_id for b in bindings] == [SystemRole.PROJECT_OWNER, SystemRole.USER_ADMIN]


# ============================================================================
# Validation
# ============================================================================

class TestValidateUpdates:
    """Test validation of binding updates."""

    def test_valid_updates(self, manager, user):
        updates = [UpdateRoleBindingRequest(role_id=SystemRole.USER_ADMIN, action=BindingAction.ADD)]
        result = manager.validate_updates(user, updates)
        assert result.is_valid
        assert result.errors == []

    def test_blank_role_id(self, manager, user):
        updates = [UpdateRoleBindingRequest(role_id="  ", action=BindingAction.ADD)]
        result = manager.validate_updates(user, updates)
        assert not result.is_valid
        assert "Role ID is required for each role binding" in result.errors

    def test_update_without_id(self, manager, user):
        updates = [UpdateRoleBindingRequest(role_id=SystemRole.USER_ADMIN, action=BindingAction.UPDATE)]
        result = manager.validate_updates(user, updates)
        assert result.errors == ["Binding ID is required to update a role binding"]

    def test_cannot_remove_own_org_admin(self, manager):
        admin = User(
            id="root",
            role_bindings=[RoleBinding(id="b1", role_id=SystemRole.ORGANIZATION_ADMIN)],
        )
        updates = [
            UpdateRoleBindingRequest(
                role_id=SystemRole.ORGANIZATION_ADMIN, action=BindingAction.REMOVE
            ),
        ]

        result = manager.validate_updates(admin, updates)

        assert not result.is_valid
        assert result.errors == ["Cannot remove own organization admin role"]

    def test_removing_org_admin_not_held_is_allowed(self, manager, user):
        updates = [
            UpdateRoleBindingRequest(
                role_id=SystemRole.ORGANIZATION_ADMIN, action=BindingAction.REMOVE
            ),
        ]
        assert manager.validate_updates(user, updates).is_valid
