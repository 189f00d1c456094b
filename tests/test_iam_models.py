"""Tests for IAM data models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from packages.iam.models import (
    BindingAction,
    BindingCondition,
    ConditionType,
    IAMError,
    InvariantViolation,
    Permission,
    PermissionCheckRequest,
    PermissionCondition,
    PolicyBindingRequest,
    ResourceType,
    RoleBinding,
    SystemRoleMutationError,
    UpdateRoleBindingRequest,
    User,
)


class TestWireFormat:
    """Test camelCase input and output."""

    def test_user_from_camel_case(self):
        user = User.model_validate({
            "id": "u1",
            "firstName": "Ada",
            "roleBindings": [
                {"id": "b1", "roleId": "roles/user.viewer", "expiresAt": "2030-01-01T00:00:00Z"},
            ],
            "directPermissions": [],
        })

        assert user.first_name == "Ada"
        assert user.role_bindings[0].role_id == "roles/user.viewer"
        assert user.role_bindings[0].expires_at == datetime(2030, 1, 1, tzinfo=UTC)

    def test_snake_case_still_accepted(self):
        request = PermissionCheckRequest(user_id="u1", permission="user.read")
        assert request.model_dump(by_alias=True)["userId"] == "u1"

    def test_request_from_camel_case(self):
        request = PermissionCheckRequest.model_validate({
            "userId": "u1",
            "permission": "project.read",
            "resourceType": "project",
            "resourceId": "p1",
            "context": {"resourceOwnerId": "u1", "mfaVerified": True},
        })
        assert request.resource_type == ResourceType.PROJECT
        assert request.context.resource_owner_id == "u1"
        assert request.context.mfa_verified


class TestRoleBinding:
    """Test binding helpers."""

    def test_naive_expiry_is_utc(self):
        binding = RoleBinding(id="b1", role_id="r", expires_at=datetime(2030, 1, 1))
        assert binding.expires_at.tzinfo == UTC

    def test_expiry_is_strict(self):
        expires = datetime(2030, 1, 1, tzinfo=UTC)
        binding = RoleBinding(id="b1", role_id="r", expires_at=expires)
        assert not binding.is_effective(expires)
        assert binding.is_effective(datetime(2029, 12, 31, 23, 59, 59, tzinfo=UTC))

    def test_global_binding(self):
        assert RoleBinding(id="b1", role_id="r").is_global
        assert not RoleBinding(
            id="b2", role_id="r", resource_type=ResourceType.PROJECT, resource_id="p1"
        ).is_global

    def test_naive_now_is_utc(self):
        binding = RoleBinding(id="b1", role_id="r", expires_at=datetime(2030, 1, 1, tzinfo=UTC))
        assert binding.is_effective(datetime(2029, 12, 31))
        assert not binding.is_effective(datetime(2030, 1, 1))

    def test_accepts_permission_conditions(self):
        """Binding conditions may be given as plain PermissionCondition objects."""
        binding = RoleBinding(
            id="b1",
            role_id="r",
            conditions=[
                PermissionCondition(type=ConditionType.MFA_REQUIRED),
                BindingCondition(type=ConditionType.APPROVAL_REQUIRED),
            ],
        )
        assert [c.type for c in binding.conditions] == ["mfa_required", "approval_required"]

        update = UpdateRoleBindingRequest(
            id="b1",
            role_id="r",
            action=BindingAction.UPDATE,
            conditions=[PermissionCondition(type=ConditionType.MFA_REQUIRED)],
        )
        assert update.patch()["conditions"][0].type == "mfa_required"

    def test_bindings_are_immutable(self):
        binding = RoleBinding(id="b1", role_id="r")
        with pytest.raises(ValidationError):
            binding.role_id = "other"


class TestPermission:
    def test_matches_id_or_name(self):
        permission = Permission(id="user.read", name="Read Users", resource="user", action="read")
        assert permission.matches("user.read")
        assert permission.matches("Read Users")
        assert not permission.matches("user.update")

    def test_unnamed_permission_does_not_match_empty_string(self):
        permission = Permission(id="user.read", resource="user", action="read")
        assert not permission.matches("")

    def test_condition_type_accepts_enum(self):
        cond = PermissionCondition(type=ConditionType.RESOURCE_OWNER, value="self")
        assert cond.type == "resource_owner"


class TestUpdateRoleBindingRequest:
    """Test patch semantics."""

    def test_absent_fields_are_not_patched(self):
        update = UpdateRoleBindingRequest(id="b1", role_id="r", action=BindingAction.UPDATE)
        assert update.patch() == {}

    def test_explicit_none_is_patched(self):
        update = UpdateRoleBindingRequest(
            id="b1", role_id="r", action=BindingAction.UPDATE, expires_at=None
        )
        assert update.patch() == {"expires_at": None}

    def test_camel_case_patch(self):
        update = UpdateRoleBindingRequest.model_validate({
            "id": "b1",
            "roleId": "r",
            "action": "update",
            "resourceId": "p2",
        })
        assert update.patch() == {"resource_id": "p2"}

    def test_to_create_request(self):
        update = UpdateRoleBindingRequest(
            role_id="r",
            action=BindingAction.ADD,
            resource_type=ResourceType.PROJECT,
            resource_id="p1",
        )
        create = update.to_create_request()
        assert create.role_id == "r"
        assert create.resource_type == ResourceType.PROJECT
        assert create.resource_id == "p1"


class TestPolicyBindingRequest:
    def test_resource_type_enum_is_flattened(self):
        request = PolicyBindingRequest(role_id="r", resource_type=ResourceType.PROJECT)
        assert request.resource_type == "project"


class TestErrors:
    def test_system_role_mutation_error(self):
        error = SystemRoleMutationError("roles/user.viewer", "delete")
        assert isinstance(error, InvariantViolation)
        assert isinstance(error, IAMError)
        assert error.code == "system_role_immutable"
        assert error.role_id == "roles/user.viewer"
        assert "roles/user.viewer" in error.message
