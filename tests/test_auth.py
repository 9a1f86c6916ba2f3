import time

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi import HTTPException
from jose import jwt
from jose.utils import base64url_encode

from conftest import VIEWER
from livemap.core import auth

SECRET = "test-jwt-secret"
KID = "map-key-1"


def _status(fn, *args, **kwargs):
    with pytest.raises(HTTPException) as exc:
        fn(*args, **kwargs)
    return exc.value.status_code


def _bearer(token):
    return f"Bearer {token}"


def _hs256(claims):
    return jwt.encode(claims, SECRET, algorithm="HS256")


# ------------------------------------------------------------------
# header mode
# ------------------------------------------------------------------

def test_header_mode_trusts_user_id(monkeypatch):
    monkeypatch.setattr(auth, "AUTH_VERIFY_MODE", "header")

    assert auth.get_current_user_id(authorization=None, x_user_id=VIEWER) == VIEWER
    assert _status(auth.get_current_user_id, authorization=None, x_user_id=None) == 401


# ------------------------------------------------------------------
# hs256 mode
# ------------------------------------------------------------------

@pytest.fixture
def hs256(monkeypatch):
    monkeypatch.setattr(auth, "AUTH_VERIFY_MODE", "hs256")
    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)


def test_hs256_valid_token(hs256):
    token = _hs256({"sub": VIEWER, "exp": int(time.time()) + 300})
    assert auth.get_current_user_id(authorization=_bearer(token), x_user_id=None) == VIEWER


def test_hs256_ignores_user_id_header(hs256):
    assert _status(auth.get_current_user_id, authorization=None, x_user_id=VIEWER) == 401


@pytest.mark.parametrize("header", ["Token abc", "Bearer ", "Bearer"])
def test_malformed_authorization_header(hs256, header):
    assert _status(auth.get_current_user_id, authorization=header, x_user_id=None) == 401


def test_hs256_expired_token(hs256):
    token = _hs256({"sub": VIEWER, "exp": int(time.time()) - 60})
    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 401


def test_hs256_wrong_secret(hs256):
    token = jwt.encode({"sub": VIEWER}, "someone-elses-secret", algorithm="HS256")
    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 401


@pytest.mark.parametrize("claims", [{"sub": "not-a-uuid"}, {"role": "authenticated"}])
def test_hs256_bad_sub(hs256, claims):
    token = _hs256(claims)
    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 401


def test_hs256_without_secret_is_server_error(hs256, monkeypatch):
    monkeypatch.delenv("SUPABASE_JWT_SECRET")
    token = _hs256({"sub": VIEWER})
    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 500


def test_unknown_mode_is_server_error(monkeypatch):
    monkeypatch.setattr(auth, "AUTH_VERIFY_MODE", "magic")
    assert _status(auth.get_current_user_id, authorization=_bearer("x.y.z"), x_user_id=None) == 500


# ------------------------------------------------------------------
# jwks mode
# ------------------------------------------------------------------

class _FakeResponse:
    def __init__(self, data, status_code=200):
        self._data = data
        self.status_code = status_code

    def json(self):
        return self._data


@pytest.fixture
def signing_key():
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    nums = key.public_key().public_numbers()
    jwk = {
        "kty": "EC",
        "crv": "P-256",
        "alg": "ES256",
        "kid": KID,
        "x": base64url_encode(nums.x.to_bytes(32, "big")).decode(),
        "y": base64url_encode(nums.y.to_bytes(32, "big")).decode(),
    }
    return pem, jwk


@pytest.fixture
def jwks(monkeypatch, signing_key):
    _, jwk = signing_key
    calls = []

    def fake_get(url, headers=None, timeout=None):
        calls.append((url, headers))
        return _FakeResponse({"keys": [jwk]})

    monkeypatch.setattr(auth, "AUTH_VERIFY_MODE", "jwks")
    monkeypatch.setattr(auth, "SUPABASE_URL", "https://proj.supabase.co/")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setitem(auth._JWKS_CACHE, "jwks", None)
    monkeypatch.setitem(auth._JWKS_CACHE, "ts", 0)
    monkeypatch.setattr(auth.requests, "get", fake_get)
    return calls


def _es256(pem, claims, kid=KID):
    return jwt.encode(claims, pem, algorithm="ES256", headers={"kid": kid})


def test_jwks_valid_token_and_cache(jwks, signing_key):
    pem, _ = signing_key
    token = _es256(pem, {"sub": VIEWER, "exp": int(time.time()) + 300})

    assert auth.get_current_user_id(authorization=_bearer(token), x_user_id=None) == VIEWER
    assert auth.get_current_user_id(authorization=_bearer(token), x_user_id=None) == VIEWER

    assert len(jwks) == 1
    url, headers = jwks[0]
    assert url == "https://proj.supabase.co/auth/v1/.well-known/jwks.json"
    assert headers == {"apikey": "anon-key"}


def test_jwks_unknown_kid_refetches_once(jwks, signing_key):
    pem, _ = signing_key
    token = _es256(pem, {"sub": VIEWER}, kid="rotated-away")

    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 401
    assert len(jwks) == 2


def test_jwks_rejects_other_algorithms(jwks):
    token = jwt.encode({"sub": VIEWER}, SECRET, algorithm="HS256", headers={"kid": KID})
    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 401
    assert jwks == []


def test_jwks_expired_token(jwks, signing_key):
    pem, _ = signing_key
    token = _es256(pem, {"sub": VIEWER, "exp": int(time.time()) - 60})
    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 401


def test_jwks_garbage_token(jwks):
    assert _status(auth.get_current_user_id, authorization=_bearer("not-a-jwt"), x_user_id=None) == 401


def test_jwks_fetch_failure_is_server_error(jwks, signing_key, monkeypatch):
    def broken_get(url, headers=None, timeout=None):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(auth.requests, "get", broken_get)
    pem, _ = signing_key
    token = _es256(pem, {"sub": VIEWER})

    assert _status(auth.get_current_user_id, authorization=_bearer(token), x_user_id=None) == 500
