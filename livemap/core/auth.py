import os
import time
import uuid
from typing import Optional, Dict, Any

import requests
from fastapi import Header, HTTPException
from jose import jwt, JWTError
from jose.utils import base64url_decode
from loguru import logger

from cryptography.hazmat.primitives.asymmetric import ec

from livemap.core.config import SUPABASE_URL


# ------------------------------------------------------------
# Configuration
# ------------------------------------------------------------
AUTH_VERIFY_MODE = os.getenv("AUTH_VERIFY_MODE", "jwks").lower()  # "jwks", "hs256" or "header"
AUTH_DEBUG = os.getenv("AUTH_DEBUG", "false").lower() in ("1", "true", "yes")

_JWKS_CACHE: Dict[str, Any] = {"ts": 0, "jwks": None}
_JWKS_TTL_SECONDS = int(os.getenv("JWKS_TTL_SECONDS", "600"))


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def _get_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header format")

    token = parts[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    return token


# ------------------------------------------------------------
# JWKS Fetch + Cache
# ------------------------------------------------------------
def _fetch_jwks() -> Dict[str, Any]:
    """
    Fetch Supabase JWKS.
    Supabase requires an apikey header (anon or service_role).
    """
    anon_key = os.getenv("SUPABASE_ANON_KEY")
    if not anon_key or not SUPABASE_URL:
        raise HTTPException(
            status_code=500,
            detail="SUPABASE_URL and SUPABASE_ANON_KEY are required for JWKS mode",
        )

    url = f"{SUPABASE_URL.rstrip('/')}/auth/v1/.well-known/jwks.json"

    try:
        resp = requests.get(url, headers={"apikey": anon_key}, timeout=10)
        data = resp.json()
    except (requests.RequestException, ValueError):
        raise HTTPException(status_code=500, detail="Could not load JWKS")

    if resp.status_code != 200 or "keys" not in data:
        raise HTTPException(status_code=500, detail=f"Invalid JWKS response: {data}")

    return data


def _get_cached_jwks() -> Dict[str, Any]:
    now = time.time()

    if _JWKS_CACHE["jwks"] and now - _JWKS_CACHE["ts"] < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE["jwks"]

    jwks = _fetch_jwks()
    _JWKS_CACHE["jwks"] = jwks
    _JWKS_CACHE["ts"] = now

    return jwks


def _public_key_from_jwk(jwk: Dict[str, Any]):
    """Build an EC public key from the x/y coordinates of a Supabase ES256 JWK."""
    x = base64url_decode(jwk["x"].encode())
    y = base64url_decode(jwk["y"].encode())

    public_numbers = ec.EllipticCurvePublicNumbers(
        int.from_bytes(x, "big"),
        int.from_bytes(y, "big"),
        ec.SECP256R1(),
    )

    return public_numbers.public_key()


# ------------------------------------------------------------
# Verification Modes
# ------------------------------------------------------------
def _decode(token: str, key: Any, algorithm: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            options={"verify_aud": False},
        )
    except JWTError as exc:
        logger.info(f"[auth] rejected {algorithm} token: {exc}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def _verify_jwt_hs256(token: str) -> Dict[str, Any]:
    secret = os.getenv("SUPABASE_JWT_SECRET")
    if not secret:
        raise HTTPException(status_code=500, detail="SUPABASE_JWT_SECRET not set")
    return _decode(token, secret, "HS256")


def _find_jwk(kid: str) -> Optional[Dict[str, Any]]:
    keys = _get_cached_jwks()["keys"]
    match = next((k for k in keys if k.get("kid") == kid), None)
    if match is None:
        # key rotation: drop the cache and look once more
        _JWKS_CACHE["jwks"] = None
        keys = _get_cached_jwks()["keys"]
        match = next((k for k in keys if k.get("kid") == kid), None)
    return match


def _verify_jwt_jwks(token: str) -> Dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token header")

    alg = header.get("alg")
    kid = header.get("kid")

    if AUTH_DEBUG:
        logger.debug(f"[auth] header.alg={alg} header.kid={kid}")

    if not kid:
        raise HTTPException(status_code=401, detail="Token missing kid")

    if alg != "ES256":
        raise HTTPException(status_code=401, detail=f"Unsupported JWT alg: {alg}")

    key_data = _find_jwk(kid)
    if not key_data:
        raise HTTPException(status_code=401, detail="Public key not found for kid")

    return _decode(token, _public_key_from_jwk(key_data), "ES256")


# ------------------------------------------------------------
# Main Dependency
# ------------------------------------------------------------
def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> str:

    if AUTH_VERIFY_MODE == "header":
        # local development only: trust the caller
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        return x_user_id

    token = _get_bearer_token(authorization)

    if AUTH_DEBUG:
        logger.debug(f"[auth] mode={AUTH_VERIFY_MODE} token_len={len(token)}")

    if AUTH_VERIFY_MODE == "hs256":
        payload = _verify_jwt_hs256(token)
    elif AUTH_VERIFY_MODE == "jwks":
        payload = _verify_jwt_jwks(token)
    else:
        raise HTTPException(
            status_code=500,
            detail=f"Invalid AUTH_VERIFY_MODE: {AUTH_VERIFY_MODE}",
        )

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    try:
        user_id = str(uuid.UUID(sub))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid sub claim (not a UUID)")

    if AUTH_DEBUG:
        logger.debug(f"[auth] user_id={user_id}")

    return user_id
