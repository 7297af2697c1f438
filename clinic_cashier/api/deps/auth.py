# clinic_cashier/api/deps/auth.py - Bearer token and cashier role checks
from typing import Any, Dict, List

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_cashier.core.config import settings
from clinic_cashier.core.security import SecurityError, decode_token

security = HTTPBearer()


def _roles_from(claims: Dict[str, Any]) -> List[str]:
    roles = claims.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    role = claims.get("role")
    if role:
        roles = [role, *roles]
    return [str(r).lower() for r in roles]


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """
    Decode JWT and return the caller context.
    Returns: {"user_id": str, "roles": [...], "claims": dict, "token": str}
    """
    token = credentials.credentials
    try:
        claims = decode_token(token)
    except SecurityError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    return {
        "user_id": claims["sub"],
        "roles": _roles_from(claims),
        "claims": claims,
        "token": token,
    }


def require_roles(required_roles: List[str]):
    """
    Create a dependency that requires one of the given roles.
    Usage: @router.get("/x", dependencies=[Depends(require_roles(["admin"]))])
    """
    allowed = {r.lower() for r in required_roles}

    def role_checker(ctx: Dict[str, Any] = Depends(get_current_user)):
        if not allowed.intersection(ctx["roles"]):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {sorted(allowed)}"
            )
        return ctx

    return role_checker


def require_cashier(ctx: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Require one of CASHIER_ROLES (cashier or admin by default)"""
    return require_roles(settings.CASHIER_ROLES)(ctx)
