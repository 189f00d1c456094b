"""Permission resolution.

Answers "may user U perform A on resource R under context C" from the
user's direct permissions and effective role bindings.

Evaluation order:
1. Direct permissions
2. Role-based permissions from effective (non-expired) bindings,
   subject to resource scope, binding conditions and permission
   conditions
3. Default deny
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from packages.iam.bindings import RoleBindingManager
from packages.iam.catalog import RoleCatalog, get_default_catalog
from packages.iam.conditions import ConditionEvaluator, describe_conditions
from packages.iam.config import IAMSettings, get_settings
from packages.iam.models import (
    Permission,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionContext,
    ResourceType,
    RoleBinding,
    User,
)

logger = logging.getLogger(__name__)

# Resolves the permissions of a non-system role id
CustomRoleLookup = Callable[[str], Sequence[Permission]]

REASON_DIRECT = "direct"
REASON_ROLE_BASED = "role-based"
REASON_NOT_FOUND = "not found"


class PermissionResolver:
    """Compute effective permissions and answer permission checks.

    The resolver keeps no per-user state. Each call samples "now" once
    and uses it for every expiry comparison; custom role lookups are
    made at most once per role id per call and never cached across
    calls.

    Usage:
        resolver = PermissionResolver(get_default_catalog())

        response = resolver.check_permission(user, PermissionCheckRequest(
            user_id=user.id,
            permission="project.read",
            resource_type=ResourceType.PROJECT,
            resource_id="p1",
        ))
        if not response.granted:
            # Reject with response.reason
    """

    def __init__(
        self,
        role_catalog: RoleCatalog,
        condition_evaluator: ConditionEvaluator | None = None,
        binding_manager: RoleBindingManager | None = None,
        lookup_custom_role_permissions: CustomRoleLookup | None = None,
        settings: IAMSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = settings or get_settings()
        self.role_catalog = role_catalog
        self.condition_evaluator = condition_evaluator or ConditionEvaluator.from_settings(settings)
        self.binding_manager = binding_manager or RoleBindingManager(role_catalog, clock)
        self.lookup_custom_role_permissions = lookup_custom_role_permissions
        self.allow_type_fallback = settings.allows_type_fallback
        self._clock = clock or (lambda: datetime.now(UTC))

    def _role_permissions(
        self,
        role_id: str,
        resolved: dict[str, list[Permission]],
    ) -> list[Permission]:
        """Get a role's permissions, resolving each role id once per call."""
        if role_id not in resolved:
            if self.role_catalog.is_system_role(role_id):
                resolved[role_id] = self.role_catalog.get_system_role_permissions(role_id)
            elif self.lookup_custom_role_permissions is not None:
                resolved[role_id] = list(self.lookup_custom_role_permissions(role_id))
            else:
                logger.debug("No permissions source for role %s", role_id)
                resolved[role_id] = []
        return resolved[role_id]

    def _scope_allows(self, binding: RoleBinding, request: PermissionCheckRequest) -> bool:
        """Check if a binding's resource scope covers the requested resource."""
        if binding.resource_type is None:
            return True
        if binding.resource_type != request.resource_type:
            return False
        if binding.resource_id is None or binding.resource_id == request.resource_id:
            return True
        return self.allow_type_fallback

    def check_permission(
        self,
        user: User,
        request: PermissionCheckRequest,
        now: datetime | None = None,
    ) -> PermissionCheckResponse:
        """Check if user has a permission.

        Args:
            user: Fully-hydrated principal
            request: Permission, optional target resource and context
            now: Evaluation instant (defaults to the resolver clock)

        Returns:
            PermissionCheckResponse with result and reason
        """
        now = now or self._clock()

        # Step 1: Direct permissions
        for permission in user.direct_permissions:
            if permission.matches(request.permission):
                logger.debug(
                    "Access GRANTED (direct): user=%s permission=%s",
                    user.id, request.permission
                )
                return PermissionCheckResponse(granted=True, reason=REASON_DIRECT)

        # Step 2: Role-based permissions
        scoped = request.resource_type is not None and request.resource_id is not None
        resolved: dict[str, list[Permission]] = {}

        for binding in self.binding_manager.get_active_bindings(user, now):
            binding_conditions_met: bool | None = None

            for permission in self._role_permissions(binding.role_id, resolved):
                if not permission.matches(request.permission):
                    continue

                if scoped and not self._scope_allows(binding, request):
                    continue

                if binding_conditions_met is None:
                    binding_conditions_met = self.condition_evaluator.evaluate(
                        user, binding.conditions, request.context, now
                    )
                if not binding_conditions_met:
                    break

                if permission.conditions and not self.condition_evaluator.evaluate(
                    user, permission.conditions, request.context, now
                ):
                    continue

                logger.debug(
                    "Access GRANTED by role %s: user=%s permission=%s binding=%s",
                    binding.role_id, user.id, request.permission, binding.id
                )
                return PermissionCheckResponse(
                    granted=True,
                    reason=REASON_ROLE_BASED,
                    conditions=describe_conditions([*binding.conditions, *permission.conditions]),
                    matched_role=binding.role_id,
                    matched_binding=binding.id,
                )

        # Step 3: Default deny
        logger.info(
            "Access DENIED (default): user=%s permission=%s resource=%s:%s",
            user.id, request.permission,
            request.resource_type.value if request.resource_type else None,
            request.resource_id
        )
        return PermissionCheckResponse(granted=False, reason=REASON_NOT_FOUND)

    def check_any(
        self,
        user: User,
        requests: Sequence[PermissionCheckRequest],
    ) -> PermissionCheckResponse:
        """Check if user has any of the permissions."""
        now = self._clock()
        for request in requests:
            response = self.check_permission(user, request, now)
            if response.granted:
                return response

        return PermissionCheckResponse(granted=False, reason=REASON_NOT_FOUND)

    def check_all(
        self,
        user: User,
        requests: Sequence[PermissionCheckRequest],
    ) -> PermissionCheckResponse:
        """Check if user has all of the permissions.

        An empty request list is denied.
        """
        if not requests:
            return PermissionCheckResponse(granted=False, reason=REASON_NOT_FOUND)

        now = self._clock()
        conditions: list[str] = []
        for request in requests:
            response = self.check_permission(user, request, now)
            if not response.granted:
                return response
            conditions.extend(response.conditions)

        return PermissionCheckResponse(
            granted=True,
            reason="All required permissions granted",
            conditions=conditions,
        )

    def can_perform_action(
        self,
        user: User,
        permission: str,
        resource_type: ResourceType | None = None,
        resource_id: str | None = None,
        context: PermissionContext | None = None,
    ) -> bool:
        """Convenience: boolean permission check."""
        request = PermissionCheckRequest(
            user_id=user.id,
            permission=permission,
            resource_type=resource_type,
            resource_id=resource_id,
            context=context,
        )
        return self.check_permission(user, request).granted

    def get_effective_permissions(
        self,
        user: User,
        now: datetime | None = None,
    ) -> list[Permission]:
        """Get every permission the user holds, deduplicated by id.

        Resource scopes and conditions are ignored, so the result is
        suitable for listing only; access decisions must go through
        check_permission.
        """
        now = now or self._clock()
        resolved: dict[str, list[Permission]] = {}
        permissions: dict[str, Permission] = {}

        for permission in user.direct_permissions:
            permissions.setdefault(permission.id, permission)

        for binding in self.binding_manager.get_active_bindings(user, now):
            for permission in self._role_permissions(binding.role_id, resolved):
                permissions.setdefault(permission.id, permission)

        return list(permissions.values())


# Singleton instance
_permission_resolver: PermissionResolver | None = None


def get_permission_resolver() -> PermissionResolver:
    """Get the permission resolver singleton."""
    global _permission_resolver
    if _permission_resolver is None:
        _permission_resolver = PermissionResolver(get_default_catalog())
    return _permission_resolver


# FastAPI dependency helpers
def require_permission(
    permission: str,
    get_user: Callable[..., User],
    resolver: PermissionResolver | None = None,
):
    """FastAPI dependency to require a permission.

    Usage:
        @app.get("/users")
        async def list_users(
            _: PermissionCheckResponse = Depends(require_permission("user.read", get_current_user))
        ):
            pass
    """
    from fastapi import Depends, HTTPException, status

    def check(user: User = Depends(get_user)) -> PermissionCheckResponse:
        engine = resolver or get_permission_resolver()
        response = engine.check_permission(
            user,
            PermissionCheckRequest(user_id=user.id, permission=permission),
        )

        if not response.granted:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "forbidden",
                    "message": response.reason,
                    "permission": permission,
                }
            )

        return response

    return check
