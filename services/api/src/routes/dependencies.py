import asyncio
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models.operations.users import user_create_if_not_exists_and_get
from utils import log

logger = log.get_logger(__name__)

security = HTTPBearer()

ROLES = ("farmer", "buyer", "transporter")


def _claim_email(payload: Dict[str, Any]) -> str:
    email = payload.get("email")
    # Some identity providers send a list of {"value": ...} entries
    if isinstance(email, list):
        if not email:
            return ""
        item = email[0]
        email = item.get("value") if isinstance(item, dict) else item
    return str(email) if email else ""


async def authenticate_token(app: FastAPI, token: str) -> Optional[Dict[str, Any]]:
    """Verify a bearer token and load its user.

    Returns the token claims with ``db_user`` and ``role`` added, or None when
    the token is invalid or the account is deactivated.
    """
    auth_client = getattr(app.state, "auth_client", None)
    if auth_client is None:
        logger.error("Token received but no auth_client is configured")
        return None

    if auth_client.jwk_client is not None:
        # Signing key lookup may fetch the JWKS over HTTP
        loop = asyncio.get_running_loop()
        payload = await loop.run_in_executor(None, auth_client.decode_jwt, token)
    else:
        payload = auth_client.decode_jwt(token)
    if not payload or not payload.get("sub"):
        return None

    role = payload.get("role")
    user_obj = await user_create_if_not_exists_and_get(
        payload["sub"],
        _claim_email(payload),
        role=role if role in ROLES else None,
    )
    if not user_obj.data.active:
        logger.info(f"Rejected token for deactivated user {user_obj.id}")
        return None

    payload["db_user"] = user_obj
    payload["role"] = user_obj.data.role
    return payload


async def current_user_get(request: Request, token: HTTPAuthorizationCredentials = Depends(security)):
    try:
        payload = await authenticate_token(request.app, token.credentials)
    except Exception as e:
        logger.error(f"Failed to load user for token: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")

    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return payload


def require_roles(*roles: str):
    """Dependency factory: the current user must hold one of *roles*."""
    async def dependency(user: dict = Depends(current_user_get)) -> dict:
        if user.get("role") not in roles:
            logger.warning(f"User {user.get('sub')} with role {user.get('role')} denied; requires {roles}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {' or '.join(roles)}",
            )
        return user

    return dependency


require_farmer = require_roles("farmer")
require_buyer = require_roles("buyer")
require_transporter = require_roles("transporter")
require_farmer_or_buyer = require_roles("farmer", "buyer")
