"""IAM Permission Engine Package.

Cloud-IAM style authorization: hierarchical system roles, scoped and
time-limited role bindings, contextual conditions and custom roles.

Usage:
    from packages.iam import (
        PermissionCheckRequest,
        get_default_catalog,
        get_permission_resolver,
    )

    resolver = get_permission_resolver()

    # Check permission
    response = resolver.check_permission(
        user, PermissionCheckRequest(user_id=user.id, permission="user.read")
    )
    if response.granted:
        # Allowed
        pass
"""

from packages.iam.models import (
    ActionType,
    BindingAction,
    BindingCondition,
    CatalogError,
    ConditionType,
    CreateRoleBindingRequest,
    IAMError,
    InvariantViolation,
    Permission,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCondition,
    PermissionContext,
    Policy,
    PolicyBinding,
    PolicyBindingRequest,
    PolicyCondition,
    ResourceType,
    Role,
    RoleBinding,
    RoleType,
    SystemRoleMutationError,
    UpdateRoleBindingRequest,
    User,
    UserProfile,
    ValidationResult,
)
from packages.iam.config import IAMSettings, get_settings
from packages.iam.catalog import (
    CatalogLoader,
    PermissionCatalog,
    RoleCatalog,
    SystemRole,
    build_system_catalog,
    get_default_catalog,
)
from packages.iam.conditions import ConditionEvaluator
from packages.iam.bindings import RoleBindingManager, build_role_binding
from packages.iam.resolver import (
    PermissionResolver,
    get_permission_resolver,
    require_permission,
)
from packages.iam.roles import DELEGATION_TABLE, DelegationRule, RoleManager

__all__ = [
    # Models
    "ActionType",
    "BindingAction",
    "BindingCondition",
    "ConditionType",
    "CreateRoleBindingRequest",
    "Permission",
    "PermissionCheckRequest",
    "PermissionCheckResponse",
    "PermissionCondition",
    "PermissionContext",
    "Policy",
    "PolicyBinding",
    "PolicyBindingRequest",
    "PolicyCondition",
    "ResourceType",
    "Role",
    "RoleBinding",
    "RoleType",
    "UpdateRoleBindingRequest",
    "User",
    "UserProfile",
    "ValidationResult",
    # Errors
    "IAMError",
    "InvariantViolation",
    "SystemRoleMutationError",
    "CatalogError",
    # Configuration
    "IAMSettings",
    "get_settings",
    # Catalogs
    "CatalogLoader",
    "PermissionCatalog",
    "RoleCatalog",
    "SystemRole",
    "build_system_catalog",
    "get_default_catalog",
    # Services
    "ConditionEvaluator",
    "RoleBindingManager",
    "build_role_binding",
    "PermissionResolver",
    "get_permission_resolver",
    "require_permission",
    "DELEGATION_TABLE",
    "DelegationRule",
    "RoleManager",
]
