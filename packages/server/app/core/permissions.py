"""
Role-based access control.

A permission table maps each role to a static list of (resource, action) rules.
Either side of a rule may be the wildcard ``*``; an action suffixed with
``:own`` only applies when the caller owns the specific resource instance.

Evaluation is a pure function over the table: no I/O, no mutation. Because
ownership is only knowable after the instance is fetched, callers check in two
phases:

1. ``check_role_permission``: role alone. Returns ALLOW, DENY, or
   ALLOW-IF-OWNER (``requires_ownership_check=True``).
2. ``check_ownership_permission``: once the instance is loaded and ownership
   is known.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from app.core.errors import PermissionDenied
from ccpm_shared.schemas.common import Role

WILDCARD = "*"
OWN_SUFFIX = ":own"


@dataclass(frozen=True)
class PermissionRule:
    resource: str
    action: str

    @classmethod
    def parse(cls, spec: str) -> "PermissionRule":
        """Build a rule from ``"resource:action"`` (``"task:update:own"`` keeps the suffix)."""
        resource, sep, action = spec.partition(":")
        if not sep or not resource or not action:
            raise ValueError(f"Invalid permission rule: {spec!r}")
        return cls(resource=resource, action=action)

    def matches(self, resource: str, action: str) -> bool:
        if self.resource == WILDCARD and self.action == WILDCARD:
            return True
        if self.resource == WILDCARD and self.action == action:
            return True
        if self.resource == resource and self.action == WILDCARD:
            return True
        return self.resource == resource and self.action == action

    def matches_owned(self, resource: str, action: str) -> bool:
        return self.resource == resource and self.action == f"{action}{OWN_SUFFIX}"


@dataclass(frozen=True)
class Principal:
    """The authenticated actor making a request."""

    user_id: uuid.UUID
    role: Role


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    requires_ownership_check: bool = False

    @property
    def denied(self) -> bool:
        return not self.allowed and not self.requires_ownership_check


ALLOW = AccessDecision(allowed=True)
ALLOW_IF_OWNER = AccessDecision(allowed=False, requires_ownership_check=True)
DENY = AccessDecision(allowed=False)


class PermissionTable:
    """Immutable role -> rules mapping."""

    def __init__(self, rules: Mapping[Role | str, Iterable[PermissionRule | str]]):
        frozen: dict[str, tuple[PermissionRule, ...]] = {}
        for role, role_rules in rules.items():
            key = role.value if isinstance(role, Role) else str(role)
            frozen[key] = tuple(
                r if isinstance(r, PermissionRule) else PermissionRule.parse(r)
                for r in role_rules
            )
        self._rules = MappingProxyType(frozen)

    def rules_for(self, role: Role | str | None) -> tuple[PermissionRule, ...]:
        if role is None:
            return ()
        key = role.value if isinstance(role, Role) else str(role)
        return self._rules.get(key, ())

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(self._rules)


DEFAULT_RULES: dict[Role, tuple[str, ...]] = {
    Role.ADMIN: ("*:*",),
    Role.MANAGER: (
        "project:create",
        "project:read",
        "project:update",
        "project:delete",
        "task:create",
        "task:read",
        "task:update",
        "task:delete",
        "user:read",
        "user:update:own",
        "auditlog:read",
        "organization:read",
        "department:read",
    ),
    Role.USER: (
        "project:read",
        "project:create",
        "project:update:own",
        "project:delete:own",
        "task:read",
        "task:create",
        "task:update:own",
        "task:delete:own",
        "user:read:own",
        "user:update:own",
    ),
}


class AccessControl:
    """Evaluates permission checks against an injected table."""

    def __init__(self, table: PermissionTable):
        self.table = table

    def evaluate(
        self,
        role: Role | str | None,
        resource: str,
        action: str,
        is_owner: bool = False,
    ) -> bool:
        # Unknown roles get no rules, so they are always denied.
        for rule in self.table.rules_for(role):
            if rule.matches(resource, action):
                return True
            if is_owner and rule.matches_owned(resource, action):
                return True
        return False

    def check_role_permission(
        self, principal: Principal, resource: str, action: str
    ) -> AccessDecision:
        if self.evaluate(principal.role, resource, action):
            return ALLOW
        if self.evaluate(principal.role, resource, action, is_owner=True):
            return ALLOW_IF_OWNER
        return DENY

    def check_ownership_permission(
        self, principal: Principal, resource: str, action: str, is_owner: bool
    ) -> bool:
        return self.evaluate(principal.role, resource, action, is_owner=is_owner)

    def authorize(self, principal: Principal, resource: str, action: str) -> AccessDecision:
        """Phase one; raises PermissionDenied on an outright deny."""
        decision = self.check_role_permission(principal, resource, action)
        if decision.denied:
            raise PermissionDenied("Insufficient permissions")
        return decision

    def authorize_owner(
        self, principal: Principal, resource: str, action: str, is_owner: bool
    ) -> None:
        """Phase two; raises PermissionDenied unless the role or ownership grants access."""
        if not self.check_ownership_permission(principal, resource, action, is_owner):
            raise PermissionDenied(f"Only the owner may {action} this {resource}")


def build_access_control(rules: Mapping[Role | str, Iterable[PermissionRule | str]] | None = None) -> AccessControl:
    return AccessControl(PermissionTable(rules if rules is not None else DEFAULT_RULES))
