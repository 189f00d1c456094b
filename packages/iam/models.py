"""IAM data models.

Defines permissions, roles, role bindings, policies and the
request/response types of the permission engine.

Field names are snake_case in Python and camelCase on the wire
(``role_bindings`` <-> ``roleBindings``); both spellings are accepted
when constructing a model.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _as_utc(value: datetime | None) -> datetime | None:
    """Interpret naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class IAMModel(BaseModel):
    """Base model accepting both snake_case and camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResourceType(str, Enum):
    """Resource kinds a permission or binding can refer to."""

    USER = "user"
    PROJECT = "project"
    DOCUMENT = "document"
    ORGANIZATION = "organization"
    ROLE = "role"
    PERMISSION = "permission"
    BILLING = "billing"
    AUDIT = "audit"


class ActionType(str, Enum):
    """Actions a permission allows on a resource."""

    # CRUD operations
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    # Management operations
    MANAGE = "manage"
    ADMIN = "admin"

    # Specific operations
    INVITE = "invite"
    ASSIGN_ROLE = "assign_role"
    REVOKE_ROLE = "revoke_role"
    VIEW_AUDIT = "view_audit"
    EXPORT = "export"
    ARCHIVE = "archive"
    RESTORE = "restore"


class RoleType(str, Enum):
    """Origin of a role."""

    SYSTEM = "system"
    PREDEFINED = "predefined"
    CUSTOM = "custom"


class ConditionType(str, Enum):
    """Condition types understood by the condition evaluator."""

    # Permission conditions
    RESOURCE_OWNER = "resource_owner"
    DEPARTMENT_MEMBER = "department_member"
    ORGANIZATION_MEMBER = "organization_member"
    TIME_BASED = "time_based"
    IP_BASED = "ip_based"

    # Binding-only conditions
    APPROVAL_REQUIRED = "approval_required"
    MFA_REQUIRED = "mfa_required"


class BindingAction(str, Enum):
    """Mutation applied by an UpdateRoleBindingRequest."""

    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"


# =============================================================================
# Conditions
# =============================================================================


class PermissionCondition(IAMModel):
    """A context predicate narrowing when a permission applies.

    ``type`` is kept as a plain string so that condition types the
    evaluator does not know can still be represented (and denied).
    """

    model_config = ConfigDict(frozen=True)

    type: str = Field(description="Condition type, see ConditionType")
    value: str | None = Field(default=None, description="Condition argument (e.g. 'self')")
    operator: str | None = Field(
        default=None,
        description="Comparison operator (equals, contains, in, not_in)"
    )

    @field_validator("type", mode="before")
    @classmethod
    def enum_to_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value


class BindingCondition(PermissionCondition):
    """A context predicate narrowing when a role binding applies.

    Binding fields accept any PermissionCondition; this subclass only
    names the intent at call sites.
    """


# =============================================================================
# Permissions and roles
# =============================================================================


class Permission(IAMModel):
    """An allowed (resource, action) pair, optionally conditioned.

    Naming convention for ids: {resource}.{action}
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique permission identifier")
    name: str = Field(default="", description="Human-readable permission name")
    description: str = Field(default="", description="Permission description")
    resource: ResourceType = Field(description="Resource the permission applies to")
    action: ActionType = Field(description="Action the permission allows")
    conditions: list[PermissionCondition] = Field(
        default_factory=list,
        description="All conditions must hold (AND logic)"
    )

    def matches(self, requested: str) -> bool:
        """Check if a requested permission string names this permission."""
        return requested == self.id or (bool(self.name) and requested == self.name)


class Role(IAMModel):
    """A named permission bundle.

    System roles are enumerated by the role catalog and can never be
    changed; custom roles are organization-scoped and mutable by their
    creator.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique role identifier (e.g. roles/user.viewer)")
    name: str = Field(description="Human-readable role name")
    description: str = Field(default="", description="Role description")
    type: RoleType = Field(description="System, predefined or custom")
    permissions: list[Permission] = Field(
        default_factory=list,
        description="Permissions granted by this role"
    )
    inherits_from: list[str] = Field(
        default_factory=list,
        description="Role ids this role inherits from"
    )
    organization_id: str | None = Field(
        default=None,
        description="Organization owning the role (None for global roles)"
    )
    is_system_role: bool = Field(default=False, description="Immutable system role")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    created_by: str | None = Field(default=None, description="Creator user id")

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_times(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def has_permission(self, permission_id: str) -> bool:
        """Check if role grants a permission."""
        return any(p.matches(permission_id) for p in self.permissions)


class RoleBinding(IAMModel):
    """Assignment of a role to a user.

    A binding without ``resource_type`` applies globally. A binding is
    effective while ``expires_at`` is unset or strictly in the future;
    expired bindings are ignored at read time, never purged.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique binding identifier")
    role_id: str = Field(description="Bound role id")
    role_name: str = Field(default="", description="Display name of the bound role")
    resource_type: ResourceType | None = Field(
        default=None,
        description="Scope resource type (None = global)"
    )
    resource_id: str | None = Field(default=None, description="Scope resource id")
    conditions: list[PermissionCondition] = Field(
        default_factory=list,
        description="All conditions must hold (AND logic)"
    )
    expires_at: datetime | None = Field(default=None, description="Expiry instant")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    assigned_by: str = Field(default="system", description="User id of the assigner")

    @field_validator("expires_at", "created_at")
    @classmethod
    def normalize_times(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def is_global(self) -> bool:
        """Check if the binding has no resource scope."""
        return self.resource_type is None

    def is_effective(self, now: datetime) -> bool:
        """Check if the binding has not expired at ``now``.

        A naive ``now`` is interpreted as UTC.
        """
        return self.expires_at is None or self.expires_at > _as_utc(now)


# =============================================================================
# Users
# =============================================================================


class UserProfile(IAMModel):
    """Profile attributes used by condition evaluation."""

    avatar: str | None = None
    bio: str | None = None
    department: str | None = None
    phone_number: str | None = None
    location: str | None = None


class User(IAMModel):
    """Fully-hydrated principal whose access is evaluated.

    The engine treats a User as a read-only snapshot; binding updates
    return new collections instead of mutating ``role_bindings``.
    """

    id: str = Field(description="Unique user identifier")
    email: str | None = Field(default=None, description="User's email")
    first_name: str = Field(default="", description="Given name")
    last_name: str = Field(default="", description="Family name")
    profile: UserProfile = Field(default_factory=UserProfile)
    role_bindings: list[RoleBinding] = Field(
        default_factory=list,
        description="Role assignments"
    )
    direct_permissions: list[Permission] = Field(
        default_factory=list,
        description="Permissions granted outside any role"
    )


# =============================================================================
# Permission checks
# =============================================================================


class PermissionContext(IAMModel):
    """Request attributes that conditions are evaluated against."""

    resource_owner_id: str | None = Field(default=None, description="Owner of the target resource")
    department: str | None = Field(default=None, description="Department of the target resource")
    organization_id: str | None = Field(default=None, description="Organization of the target resource")
    ip: str | None = Field(default=None, description="Caller IP address")
    time: str | None = Field(default=None, description="Request time (ISO-8601)")
    mfa_verified: bool = Field(default=False, description="Caller completed MFA")
    approval_granted: bool = Field(default=False, description="Access was approved out of band")


class PermissionCheckRequest(IAMModel):
    """May ``user_id`` exercise ``permission`` on the given resource?"""

    user_id: str = Field(description="User being checked")
    permission: str = Field(description="Permission id (e.g. user.read) or name")
    resource_type: ResourceType | None = Field(default=None, description="Target resource type")
    resource_id: str | None = Field(default=None, description="Target resource id")
    context: PermissionContext | None = Field(default=None, description="Condition inputs")


class PermissionCheckResponse(IAMModel):
    """Result of a permission check."""

    granted: bool = Field(description="Whether access is granted")
    reason: str | None = Field(default=None, description="direct, role-based or not found")
    conditions: list[str] = Field(
        default_factory=list,
        description="Condition types that had to hold for the grant"
    )
    matched_role: str | None = Field(
        default=None,
        description="Role that granted the permission (role-based grants)"
    )
    matched_binding: str | None = Field(
        default=None,
        description="Binding that granted the permission (role-based grants)"
    )


# =============================================================================
# Binding mutations
# =============================================================================


class CreateRoleBindingRequest(IAMModel):
    """Parameters for a new role binding."""

    role_id: str
    resource_type: ResourceType | None = None
    resource_id: str | None = None
    conditions: list[PermissionCondition] | None = None
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def normalize_times(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


_PATCHABLE_FIELDS = ("resource_type", "resource_id", "conditions", "expires_at")


class UpdateRoleBindingRequest(IAMModel):
    """An add/remove/update instruction against a user's bindings.

    Field presence matters for ``update``: a field that was not passed
    keeps its current value, a field passed as ``None`` is cleared.
    """

    id: str | None = Field(default=None, description="Target binding (update/remove)")
    role_id: str
    resource_type: ResourceType | None = None
    resource_id: str | None = None
    conditions: list[PermissionCondition] | None = None
    expires_at: datetime | None = None
    action: BindingAction

    @field_validator("expires_at")
    @classmethod
    def normalize_times(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def patch(self) -> dict[str, Any]:
        """Return the explicitly supplied patchable fields."""
        return {
            name: getattr(self, name)
            for name in _PATCHABLE_FIELDS
            if name in self.model_fields_set
        }

    def to_create_request(self) -> CreateRoleBindingRequest:
        """Build the creation parameters for an ``add`` instruction."""
        return CreateRoleBindingRequest(
            role_id=self.role_id,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            conditions=self.conditions,
            expires_at=self.expires_at,
        )


# =============================================================================
# IAM policies
# =============================================================================


class PolicyCondition(IAMModel):
    """Opaque condition attached to a policy binding.

    ``expression`` is carried verbatim and never evaluated here.
    """

    title: str | None = None
    description: str | None = None
    expression: str


class PolicyBinding(IAMModel):
    """A role granted to a list of members."""

    role: str
    members: list[str] = Field(default_factory=list)
    condition: PolicyCondition | None = None


class Policy(IAMModel):
    """IAM-style policy document."""

    version: str = "1"
    bindings: list[PolicyBinding] = Field(default_factory=list)


class PolicyBindingRequest(IAMModel):
    """Input to RoleManager.create_iam_policy."""

    role_id: str
    members: list[str] = Field(default_factory=list)
    resource_type: str | None = None
    resource_id: str | None = None

    @field_validator("resource_type", mode="before")
    @classmethod
    def enum_to_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value


class ValidationResult(IAMModel):
    """Structured, non-fatal validation outcome."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)


# =============================================================================
# Errors
# =============================================================================


class IAMError(Exception):
    """Base class for IAM engine errors."""

    def __init__(self, message: str, code: str = "iam_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class InvariantViolation(IAMError):
    """Raised when a caller breaks an engine contract."""

    def __init__(self, message: str, code: str = "invariant_violation"):
        super().__init__(message, code)


class SystemRoleMutationError(InvariantViolation):
    """Raised when a system role would be updated or deleted."""

    def __init__(self, role_id: str, operation: str):
        self.role_id = role_id
        super().__init__(
            f"Cannot {operation} system role: {role_id}",
            "system_role_immutable"
        )


class CatalogError(IAMError):
    """Raised when catalog data is malformed."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_catalog")
