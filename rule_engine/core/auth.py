"""
Caller context resolution.

Authentication happens upstream; requests arrive with a bearer token whose
claims name the caller's agency. With auth disabled (local development) the
context is read from plain headers instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException

from .config import auth_disabled
from .security import decode_access_token

ADMIN_ROLES = {"ADMIN", "SUPERADMIN"}


@dataclass(frozen=True)
class CallerContext:
    agency_id: Optional[str] = None
    user_id: Optional[str] = None
    is_super_admin: bool = False
    role: str = "ADMIN"


def _truthy(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes"}


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def get_current_user(
    authorization: Optional[str] = Header(None),
    x_agency_id: Optional[str] = Header(None, alias="X-Agency-Id"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_super_admin: Optional[str] = Header(None, alias="X-Super-Admin"),
) -> CallerContext:
    if auth_disabled():
        return CallerContext(
            agency_id=(x_agency_id or "").strip() or None,
            user_id=(x_user_id or "").strip() or None,
            is_super_admin=_truthy(x_super_admin),
            role="SUPERADMIN" if _truthy(x_super_admin) else "ADMIN",
        )
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        claims = decode_access_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = str(claims.get("sub") or "").strip() or None
    role = str(claims.get("role") or "").strip().upper()
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="Invalid token claims")
    is_super_admin = bool(claims.get("super_admin")) or role == "SUPERADMIN"
    if role not in ADMIN_ROLES and not is_super_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    agency_id = str(claims.get("agency_id") or "").strip() or None
    return CallerContext(
        agency_id=agency_id,
        user_id=user_id,
        is_super_admin=is_super_admin,
        role=role,
    )
