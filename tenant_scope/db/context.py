"""Tenant context value types.

A `TenantContext` is the full set of session attributes the row-security
policies read. It is built per call and handed to the session setter; it is
never stored anywhere the next operation could pick it up.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from tenant_scope.kernel.errors import ValidationError

TENANT_ID_SETTING = "app.current_tenant_id"
USER_ID_SETTING = "app.current_user_id"
ROLE_SETTING = "app.current_user_role"
BYPASS_SETTING = "app.bypass_rls"
LOGIN_EMAIL_SETTING = "app.login_email"

# Order matters only for readability of logs and SQL.
CONTEXT_SETTINGS: tuple[str, ...] = (
    TENANT_ID_SETTING,
    USER_ID_SETTING,
    ROLE_SETTING,
    BYPASS_SETTING,
    LOGIN_EMAIL_SETTING,
)

# Value every attribute holds when no operation owns the connection.
CLEARED_VALUE = ""


class Role(str, Enum):
    """Coarse privilege classes understood by the row-security policies."""

    USER = "user"
    ADMIN = "admin"
    LOGIN_CONTEXT = "login_context"
    SYSTEM = "system"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True, slots=True)
class Actor:
    """Principal performing an operation."""

    user_id: int | None = None
    role: Role | str | None = None


@dataclass(frozen=True, slots=True)
class TenantContext:
    tenant_id: int | None = None
    acting_user_id: int | None = None
    acting_role: str | None = None
    bypass: bool = False
    login_email: str | None = None

    @classmethod
    def for_tenant(cls, tenant_id: int, actor: Actor | None = None) -> "TenantContext":
        return cls(
            tenant_id=validate_tenant_id(tenant_id),
            acting_user_id=_user_id(actor),
            acting_role=_role(actor),
            bypass=False,
        )

    @classmethod
    def for_bypass(cls, actor: Actor | None = None, *, login_email: str | None = None) -> "TenantContext":
        return cls(
            tenant_id=None,
            acting_user_id=_user_id(actor),
            acting_role=_role(actor) or Role.SYSTEM.value,
            bypass=True,
            login_email=login_email,
        )

    @classmethod
    def for_role(
        cls,
        role: Role | str,
        *,
        tenant_id: int | None = None,
        user_id: int | None = None,
    ) -> "TenantContext":
        role_value = _role(Actor(role=role))
        if not role_value:
            raise ValidationError(message="role is required", code="tenant.invalid_role")
        return cls(
            tenant_id=validate_tenant_id(tenant_id) if tenant_id is not None else None,
            acting_user_id=_validate_user_id(user_id),
            acting_role=role_value,
            bypass=False,
        )

    def as_settings(self) -> dict[str, str]:
        """Every context setting with its text value; unused ones are cleared."""
        return {
            TENANT_ID_SETTING: str(self.tenant_id) if self.tenant_id is not None else CLEARED_VALUE,
            USER_ID_SETTING: str(self.acting_user_id) if self.acting_user_id is not None else CLEARED_VALUE,
            ROLE_SETTING: self.acting_role or CLEARED_VALUE,
            BYPASS_SETTING: "true" if self.bypass else "false",
            LOGIN_EMAIL_SETTING: self.login_email or CLEARED_VALUE,
        }

    def log_fields(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "acting_user_id": self.acting_user_id,
            "acting_role": self.acting_role,
            "bypass": self.bypass,
        }


def validate_tenant_id(tenant_id: object) -> int:
    """Tenant ids are positive integers. bool is rejected even though it is an int."""
    if isinstance(tenant_id, bool) or not isinstance(tenant_id, int) or tenant_id < 1:
        raise ValidationError(
            message="tenant id must be a positive integer",
            code="tenant.invalid_id",
        )
    return tenant_id


def _validate_user_id(user_id: object) -> int | None:
    if user_id is None:
        return None
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id < 1:
        raise ValidationError(
            message="user id must be a positive integer",
            code="tenant.invalid_user_id",
        )
    return user_id


def _user_id(actor: Actor | None) -> int | None:
    return _validate_user_id(actor.user_id) if actor else None


def _role(actor: Actor | None) -> str | None:
    if actor is None or actor.role is None:
        return None
    return actor.role.value if isinstance(actor.role, Role) else str(actor.role)
