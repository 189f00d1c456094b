"""Contextual condition evaluation.

Conditions attached to permissions and role bindings are evaluated
conjunctively against the request context. Unknown condition types
deny.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from packages.iam.config import IAMSettings
from packages.iam.models import (
    ConditionType,
    PermissionCondition,
    PermissionContext,
    ResourceType,
    User,
)

logger = logging.getLogger(__name__)

ConditionCheck = Callable[[User, PermissionCondition, PermissionContext, datetime], bool]


class ConditionEvaluator:
    """Evaluate permission and binding conditions.

    ``time_based`` and ``ip_based`` conditions carry no evaluable
    predicate; they pass only when ``fail_open_unresolved`` is set.
    """

    def __init__(self, fail_open_unresolved: bool = False):
        self.fail_open_unresolved = fail_open_unresolved
        self._checks: dict[str, ConditionCheck] = {
            ConditionType.RESOURCE_OWNER.value: self._check_resource_owner,
            ConditionType.DEPARTMENT_MEMBER.value: self._check_department_member,
            ConditionType.ORGANIZATION_MEMBER.value: self._check_organization_member,
            ConditionType.TIME_BASED.value: self._check_unresolved,
            ConditionType.IP_BASED.value: self._check_unresolved,
            ConditionType.MFA_REQUIRED.value: self._check_mfa,
            ConditionType.APPROVAL_REQUIRED.value: self._check_approval,
        }

    @classmethod
    def from_settings(cls, settings: IAMSettings) -> ConditionEvaluator:
        return cls(fail_open_unresolved=settings.fail_open)

    def evaluate(
        self,
        user: User,
        conditions: Sequence[PermissionCondition],
        context: PermissionContext | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Check that every condition holds (AND logic).

        Args:
            user: Principal being checked
            conditions: Conditions to evaluate; empty means unconditional
            context: Request attributes (owner, department, organization)
            now: Evaluation instant, used for binding expiry

        Returns:
            True if all conditions hold
        """
        if not conditions:
            return True

        context = context or PermissionContext()
        now = now or datetime.now(UTC)

        for condition in conditions:
            check = self._checks.get(condition.type)
            if check is None:
                logger.warning(
                    "Unknown condition type denied: user=%s type=%s",
                    user.id, condition.type
                )
                return False
            if not check(user, condition, context, now):
                logger.debug(
                    "Condition failed: user=%s type=%s value=%s",
                    user.id, condition.type, condition.value
                )
                return False

        return True

    def _check_resource_owner(
        self, user: User, condition: PermissionCondition, context: PermissionContext, now: datetime
    ) -> bool:
        if condition.value not in (None, "self"):
            logger.warning("Unsupported resource_owner value: %s", condition.value)
            return False
        return context.resource_owner_id is not None and context.resource_owner_id == user.id

    def _check_department_member(
        self, user: User, condition: PermissionCondition, context: PermissionContext, now: datetime
    ) -> bool:
        if condition.value not in (None, "same_department"):
            logger.warning("Unsupported department_member value: %s", condition.value)
            return False
        department = user.profile.department
        return department is not None and context.department == department

    def _check_organization_member(
        self, user: User, condition: PermissionCondition, context: PermissionContext, now: datetime
    ) -> bool:
        if context.organization_id is None:
            return False
        return any(
            binding.resource_type == ResourceType.ORGANIZATION
            and binding.resource_id == context.organization_id
            and binding.is_effective(now)
            for binding in user.role_bindings
        )

    def _check_unresolved(
        self, user: User, condition: PermissionCondition, context: PermissionContext, now: datetime
    ) -> bool:
        return self.fail_open_unresolved

    def _check_mfa(
        self, user: User, condition: PermissionCondition, context: PermissionContext, now: datetime
    ) -> bool:
        return context.mfa_verified

    def _check_approval(
        self, user: User, condition: PermissionCondition, context: PermissionContext, now: datetime
    ) -> bool:
        return context.approval_granted


def describe_conditions(conditions: Sequence[PermissionCondition]) -> list[str]:
    """Render conditions as ``type`` or ``type:value`` strings."""
    return [
        f"{condition.type}:{condition.value}" if condition.value else condition.type
        for condition in conditions
    ]
