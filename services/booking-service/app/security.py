import hmac
import os
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
CRON_SECRET = os.getenv("CRON_SECRET", "renthub_cron_secret_2024")

ADMIN_ROLES = ("staff", "admin")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")


def get_principal(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> dict:
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    principal = decode_token(creds.credentials)
    if not principal.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return principal


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def _dep(principal: Annotated[dict, Depends(get_principal)]) -> dict:
        role = principal.get("role")
        if role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal

    return _dep


def require_cron_secret(secret: Annotated[str | None, Query()] = None) -> None:
    # Bearer-less trigger for external schedulers.
    if not secret or not hmac.compare_digest(secret.encode("utf-8"), CRON_SECRET.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid Cron Secret")
