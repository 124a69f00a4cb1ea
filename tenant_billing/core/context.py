"""Security context for a billing unit of work.

Webhooks arrive outside any authenticated request, so there is no ambient
tenant to inherit. Every data-access call takes a ``SecurityContext`` value
explicitly: ``SecurityContext.system()`` for lookups made before the tenant is
known, ``SecurityContext.for_tenant(tenant_id)`` for anything that writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from uuid import UUID

SecurityMode = Literal["system", "tenant"]


class TenantContextError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class SecurityContext:
    mode: SecurityMode
    tenant_id: UUID | None = None

    def __post_init__(self) -> None:
        if self.mode == "tenant" and self.tenant_id is None:
            raise ValueError("tenant security context requires a tenant_id")
        if self.mode == "system" and self.tenant_id is not None:
            raise ValueError("system security context cannot carry a tenant_id")

    @classmethod
    def system(cls) -> SecurityContext:
        return cls(mode="system")

    @classmethod
    def for_tenant(cls, tenant_id: UUID) -> SecurityContext:
        return cls(mode="tenant", tenant_id=tenant_id)

    @property
    def is_system(self) -> bool:
        return self.mode == "system"

    @property
    def setting_value(self) -> str:
        return str(self.tenant_id) if self.tenant_id is not None else ""

    def require_tenant(self, tenant_id: UUID) -> None:
        """Reject a write unless this context is scoped to ``tenant_id``."""
        if self.is_system:
            raise TenantContextError(
                f"Write for tenant {tenant_id} attempted under system security context"
            )
        if self.tenant_id != tenant_id:
            raise TenantContextError(
                f"Write for tenant {tenant_id} attempted under context of tenant {self.tenant_id}"
            )
