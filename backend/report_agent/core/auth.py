"""Caller resolution and role checks for API routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from report_agent.core.config import get_settings
from report_agent.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CallerContext:
    customer_id: str
    user_id: str
    role: str
    authenticated: bool

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class TokenGrant:
    customer_id: str
    role: str
    user_id: str


SUPPORTED_ROLES = {"customer", "analyst", "admin"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "customer"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_caller_tokens(raw: str) -> Dict[str, TokenGrant]:
    """Parse `token:customer_id:role[:user_id]` comma-separated values from env."""
    mapping: Dict[str, TokenGrant] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) < 3 or not all(parts[:3]):
            logger.warning("Ignoring malformed caller token mapping entry", entry=item)
            continue
        token, customer_id, role = parts[:3]
        user_id = parts[3] if len(parts) > 3 and parts[3] else f"{customer_id}:{role}"
        if role.lower() not in SUPPORTED_ROLES:
            logger.warning("Ignoring caller token with unsupported role", role=role)
            continue
        mapping[token] = TokenGrant(customer_id=customer_id, role=role.lower(), user_id=user_id)
    return mapping


def get_caller_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_customer_id: str | None = Header(default=None, alias="X-Customer-ID"),
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> CallerContext:
    """Resolve the verified caller from a bearer token or demo headers."""
    settings = get_settings()
    default_customer = (x_customer_id or settings.default_customer_id or "").strip()

    if not settings.auth_enabled:
        role = _normalize_role(x_actor_role)
        return CallerContext(
            customer_id=default_customer,
            user_id=(x_user_id or "").strip() or f"anonymous:{default_customer}",
            role=role,
            authenticated=False,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    grant: Optional[TokenGrant] = _parse_caller_tokens(settings.caller_tokens).get(
        credentials.credentials.strip()
    )
    if grant is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    # Admins may act on behalf of any customer; everyone else is pinned to the token's customer.
    customer_id = grant.customer_id
    if x_customer_id and x_customer_id.strip() and x_customer_id.strip() != grant.customer_id:
        if grant.role != "admin":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Token customer mismatch",
            )
        customer_id = x_customer_id.strip()

    return CallerContext(
        customer_id=customer_id,
        user_id=grant.user_id,
        role=grant.role,
        authenticated=True,
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: CallerContext = Depends(get_caller_context)) -> CallerContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
