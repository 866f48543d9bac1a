from dataclasses import dataclass
from fastapi import Depends, Header, HTTPException
from typing import Any, Dict, Optional
import logging
import os
import jwt
from jwt import PyJWKClient

logger = logging.getLogger(__name__)

ROLES = {"viewer": 0, "practitioner": 1, "owner_admin": 2}


@dataclass
class UserContext:
    user_id: str
    role: str  # owner_admin | practitioner | viewer
    tenant_id: str


def _dev_allowed() -> bool:
    return os.getenv("DEV_AUTH_ALLOW", "0") == "1"


def _decode(token: str) -> Dict[str, Any]:
    aud = os.getenv("JWT_AUDIENCE", "authenticated")
    issuer = os.getenv("JWT_ISSUER", "")
    supa_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    if not issuer and supa_url:
        issuer = f"{supa_url}/auth/v1"
    options = {} if issuer else {"verify_iss": False}

    alg = (jwt.get_unverified_header(token) or {}).get("alg", "")
    jwks_url = os.getenv("JWT_JWKS_URL") or (f"{supa_url}/auth/v1/.well-known/jwks.json" if supa_url else "")
    if not alg.startswith("HS") and jwks_url:
        # Asymmetric project keys (RS/ES)
        signing_key = PyJWKClient(jwks_url).get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience=aud,
            issuer=issuer or None,
            options=options,
        )
    return jwt.decode(
        token,
        os.getenv("JWT_SECRET", "dev_secret"),
        algorithms=["HS256", "HS512"],
        audience=aud,
        issuer=issuer or None,
        options=options,
    )


def _context_from_claims(payload: Dict[str, Any]) -> UserContext:
    app_meta = payload.get("app_metadata") or {}
    tenant_id = payload.get("tenant_id") or app_meta.get("tenant_id") or payload.get("sub")
    if not tenant_id:
        raise HTTPException(status_code=401, detail="missing_tenant")
    # Supabase puts "authenticated" in role; the app role lives in app_metadata
    role = str(app_meta.get("role") or payload.get("role") or "practitioner").lower()
    if role not in ROLES:
        role = "practitioner"
    return UserContext(user_id=str(payload.get("sub", "user")), role=role, tenant_id=str(tenant_id))


async def get_user_context(
    x_user_id: Optional[str] = Header(default=None),
    x_role: Optional[str] = Header(default=None),
    x_tenant_id: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> UserContext:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1]
        try:
            payload = _decode(token)
        except jwt.PyJWTError as exc:
            logger.info("jwt_rejected", extra={"error": str(exc)})
            if not _dev_allowed():
                raise HTTPException(status_code=401, detail="invalid_token")
        else:
            return _context_from_claims(payload)
    # No usable Bearer token: header-based context only in explicit dev mode
    if not _dev_allowed():
        raise HTTPException(status_code=401, detail="missing_token")
    role = (x_role or "practitioner").lower()
    if role not in ROLES:
        raise HTTPException(status_code=403, detail="invalid role")
    return UserContext(user_id=x_user_id or "dev-user", role=role, tenant_id=x_tenant_id or "t1")


def require_role(min_role: str):
    async def guard(ctx: UserContext = Depends(get_user_context)) -> UserContext:
        if ROLES[ctx.role] < ROLES[min_role]:
            raise HTTPException(status_code=403, detail="forbidden")
        return ctx

    return guard
