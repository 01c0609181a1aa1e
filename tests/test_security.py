import dataclasses
import time

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from jose import jwt
from jose.utils import base64url_encode

import main
import security
from config import Settings

ISSUER = "https://idp.example.com/oauth2/default"
AUDIENCE = "kv-api"
JWKS_URL = f"{ISSUER}/v1/keys"


def _b64_int(value: int) -> str:
    return base64url_encode(value.to_bytes((value.bit_length() + 7) // 8, "big")).decode()


@pytest.fixture(scope="module")
def signing_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    numbers = key.public_key().public_numbers()
    jwk = {"kty": "RSA", "kid": "test-key", "use": "sig", "n": _b64_int(numbers.n), "e": _b64_int(numbers.e)}
    return pem, {"keys": [jwk]}


@pytest.fixture
def auth_settings():
    return Settings(
        project_id="test-project",
        instance_ids=("inst-a",),
        auth_enabled=True,
        jwt_issuer=ISSUER,
        jwt_audience=AUDIENCE,
        jwks_url=JWKS_URL,
    )


@pytest.fixture
def jwks_calls(monkeypatch, signing_key):
    calls = []

    def fake_get_jwks(url):
        calls.append(url)
        return signing_key[1]

    monkeypatch.setattr(security, "get_jwks", fake_get_jwks)
    security.JWKS_CACHE.clear()
    return calls


def _token(pem, kid="test-key", **claims):
    now = int(time.time())
    payload = {"sub": "user-42", "iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + 300}
    payload.update(claims)
    headers = {"kid": kid} if kid else None
    return jwt.encode(payload, pem, algorithm="RS256", headers=headers)


def test_verify_valid_token(signing_key, auth_settings, jwks_calls):
    payload = security.verify_jwt(_token(signing_key[0]), auth_settings)
    assert payload["sub"] == "user-42"
    assert jwks_calls == [JWKS_URL]


def test_expired_token(signing_key, auth_settings, jwks_calls):
    token = _token(signing_key[0], exp=int(time.time()) - 60)
    with pytest.raises(HTTPException) as excinfo:
        security.verify_jwt(token, auth_settings)
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == "Token has expired"


def test_wrong_audience(signing_key, auth_settings, jwks_calls):
    token = _token(signing_key[0], aud="someone-else")
    with pytest.raises(HTTPException) as excinfo:
        security.verify_jwt(token, auth_settings)
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail.startswith("Invalid token claim")


def test_unknown_kid_refreshes_once(signing_key, auth_settings, jwks_calls):
    token = _token(signing_key[0], kid="rotated-away")
    with pytest.raises(HTTPException) as excinfo:
        security.verify_jwt(token, auth_settings)
    assert excinfo.value.status_code == 401
    assert len(jwks_calls) == 2


def test_missing_kid(signing_key, auth_settings, jwks_calls):
    with pytest.raises(HTTPException) as excinfo:
        security.verify_jwt(_token(signing_key[0], kid=None), auth_settings)
    assert excinfo.value.detail == "Invalid authentication credentials"


def test_user_id_from_token(signing_key, auth_settings, jwks_calls):
    assert security.get_user_id_from_token(_token(signing_key[0]), auth_settings) == "user-42"
    assert security.get_user_id_from_token("not-a-jwt", auth_settings) is None


def test_jwk_to_pem_rejects_non_rsa():
    with pytest.raises(ValueError):
        security.jwk_to_pem({"kty": "EC", "crv": "P-256"})


def test_get_jwks_is_cached(monkeypatch):
    fetched = []

    class FakeResponse:
        def raise_for_status(self):
            pass

        def json(self):
            return {"keys": []}

    def fake_get(url, timeout):
        fetched.append(url)
        return FakeResponse()

    security.JWKS_CACHE.clear()
    monkeypatch.setattr(security.requests, "get", fake_get)

    assert security.get_jwks(JWKS_URL) == {"keys": []}
    assert security.get_jwks(JWKS_URL) == {"keys": []}
    assert fetched == [JWKS_URL]
    security.JWKS_CACHE.clear()


def test_get_jwks_unavailable(monkeypatch):
    def fake_get(url, timeout):
        raise requests.exceptions.ConnectionError("idp down")

    security.JWKS_CACHE.clear()
    monkeypatch.setattr(security.requests, "get", fake_get)

    with pytest.raises(HTTPException) as excinfo:
        security.get_jwks(JWKS_URL)
    assert excinfo.value.status_code == 500


def test_api_accepts_valid_bearer_token(client, settings, signing_key, jwks_calls):
    main.app.state.settings = dataclasses.replace(
        settings, auth_enabled=True, jwt_issuer=ISSUER, jwt_audience=AUDIENCE, jwks_url=JWKS_URL
    )
    headers = {"Authorization": f"Bearer {_token(signing_key[0])}"}

    assert client.get("/v1/instances", headers=headers).status_code == 200
    assert client.get("/v1/instances", headers={"Authorization": "Bearer junk"}).status_code == 401
