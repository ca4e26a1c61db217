"""
Authentication context.

``AuthContext`` is produced once per request by the authentication gate from
the verified session token and passed explicitly to every component that
needs to know who is calling and which company they belong to. It is frozen:
nothing downstream may rebind the tenant.
"""

from dataclasses import dataclass
from typing import Any, Dict

from models import UserRole


@dataclass(frozen=True)
class AuthContext:
    identity_id: str
    tenant_id: str
    role: UserRole

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "AuthContext":
        """Build a context from decoded token claims.

        Raises KeyError or ValueError when a claim is missing or malformed.
        """
        identity_id = claims["sub"]
        tenant_id = claims["company_id"]
        if not identity_id or not tenant_id:
            raise ValueError("Token claims are missing identity or company")
        return cls(
            identity_id=str(identity_id),
            tenant_id=str(tenant_id),
            role=UserRole(claims["role"]),
        )

    def is_self(self, user_id: str) -> bool:
        return self.identity_id == user_id
