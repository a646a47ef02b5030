from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import Depends, HTTPException, Request

from app.core.settings import S
from app.services.identity import Identity, get_identity


def _cognito_enabled() -> bool:
    return bool(S.cognito_user_pool_id and S.cognito_app_client_id)


def _cognito_issuer() -> str:
    region = S.cognito_region or S.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{S.cognito_user_pool_id}"


@lru_cache(maxsize=1)
def _cognito_jwks() -> Dict[str, Any]:
    resp = requests.get(f"{_cognito_issuer()}/.well-known/jwks.json", timeout=10)
    resp.raise_for_status()
    return resp.json()


def _signing_key(token: str):
    try:
        kid = jwt.get_unverified_header(token).get("kid", "")
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token header") from exc
    for key in _cognito_jwks().get("keys", []):
        if key.get("kid") == kid:
            return jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key))
    raise HTTPException(401, "Unknown signing key")


def verify_cognito_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            _signing_key(token),
            algorithms=["RS256"],
            audience=S.cognito_app_client_id,
            issuer=_cognito_issuer(),
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc

    if S.cognito_expected_token_use and claims.get("token_use") != S.cognito_expected_token_use:
        raise HTTPException(401, "Unexpected token use")
    return claims


def _unverified_sub(token: str) -> Optional[str]:
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None
    try:
        data = json.loads(base64.urlsafe_b64decode(parts[1] + "=" * (-len(parts[1]) % 4)).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    sub = data.get("sub") if isinstance(data, dict) else None
    return sub if isinstance(sub, str) and sub.strip() else None


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


async def get_current_user_id(request: Request) -> str:
    """Caller's user id.

    With Cognito configured the bearer token must verify. Otherwise (local
    dev) the bearer value is the user id, or the ``sub`` of an unsigned JWT.
    """
    token = extract_bearer_token(request.headers.get("authorization"))
    if _cognito_enabled():
        claims = verify_cognito_token(token)
        uid = claims.get("sub") or claims.get("cognito:username") or claims.get("username")
        if not uid:
            raise HTTPException(401, "Token missing subject")
        return str(uid)
    return _unverified_sub(token) or token


def get_current_identity(user_id: str = Depends(get_current_user_id)) -> Identity:
    return get_identity(user_id)
