"""Request dependencies: database session and bearer-token checks.

Tokens are issued by the product's auth service; this service only
verifies them with the shared ``JWT_SECRET``.
"""
from __future__ import annotations

import hmac
import logging
import uuid

from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt

from usage_billing.config import settings
from usage_billing.db import SessionLocal

logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _decode_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.debug("Rejected bearer token: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid token") from exc


def _roles(payload: dict) -> set[str]:
    roles: set[str] = set()
    role_value = payload.get("role")
    if isinstance(role_value, str):
        roles.add(role_value)
    roles_value = payload.get("roles")
    if isinstance(roles_value, list):
        roles.update(str(item) for item in roles_value)
    return roles


def require_account(
    authorization: str | None = Header(default=None),
    request: Request = None,
) -> str:
    """Return the account id carried in the token's ``sub`` claim."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = _decode_token(token)
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        account_id = str(uuid.UUID(str(subject)))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid token subject") from exc
    if request is not None:
        request.state.actor_id = account_id
    return account_id


def require_admin(
    authorization: str | None = Header(default=None),
    x_admin_token: str | None = Header(default=None),
    request: Request = None,
) -> dict:
    if x_admin_token and settings.admin_api_token:
        if hmac.compare_digest(x_admin_token, settings.admin_api_token):
            if request is not None:
                request.state.actor_id = "admin-token"
            return {"actor_type": "api_token", "actor_id": "admin-token"}
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = _decode_token(token)
    if "admin" not in _roles(payload):
        raise HTTPException(status_code=403, detail="Insufficient role")
    actor_id = str(payload.get("sub"))
    if request is not None:
        request.state.actor_id = actor_id
    return {"actor_type": "user", "actor_id": actor_id}
