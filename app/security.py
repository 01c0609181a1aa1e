"""
JWT Authentication Module

Verifies OAuth2 bearer tokens (RS256) against the JWKS published by the
identity provider configured in Settings. Can be switched off with
AUTH_ENABLED=false for local work against the Bigtable emulator.
"""

import logging
from typing import Any, Dict, Optional

import requests
from cachetools import TTLCache, cached
from cachetools.keys import hashkey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from jose.utils import base64url_decode

from config import Settings

logger = logging.getLogger(__name__)

ANONYMOUS_USER: Dict[str, Any] = {"sub": "anonymous", "auth": "disabled"}

# auto_error off so a disabled auth setup accepts requests without a header
bearer_scheme = HTTPBearer(auto_error=False)

# JWKS cache per URL: 1 hour TTL, keys rotate far less often
JWKS_CACHE = TTLCache(maxsize=8, ttl=3600)


# ============================================================================
# JWKS
# ============================================================================

@cached(cache=JWKS_CACHE, key=lambda jwks_url: hashkey(jwks_url))
def get_jwks(jwks_url: str) -> Dict[str, Any]:
    """
    Fetch the JSON Web Key Set, cached for an hour.

    Raises:
        HTTPException: 500 when the IdP cannot be reached
    """
    try:
        response = requests.get(jwks_url, timeout=5)
        response.raise_for_status()
        logger.info(f"JWKS fetched from {jwks_url}")
        return response.json()
    except requests.exceptions.RequestException as e:
        logger.critical(f"Failed to fetch JWKS from {jwks_url}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication configuration error: JWKS unavailable",
        )


def jwk_to_pem(jwk: Dict[str, Any]) -> str:
    """Convert an RSA JWK to a PEM public key."""
    if jwk.get("kty") != "RSA":
        raise ValueError("Only RSA keys supported")

    n = int.from_bytes(base64url_decode(jwk["n"].encode()), "big")
    e = int.from_bytes(base64url_decode(jwk["e"].encode()), "big")
    if n.bit_length() > 16384:
        raise ValueError("Invalid RSA modulus size")

    public_key = RSAPublicNumbers(e, n).public_key()
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def _find_public_key(kid: str, jwks: Dict[str, Any]) -> Optional[str]:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid and key.get("kty") == "RSA":
            return jwk_to_pem(key)
    return None


def _resolve_public_key(kid: str, jwks_url: str) -> Optional[str]:
    """Look up `kid`, refreshing the JWKS once if it is unknown."""
    public_key = _find_public_key(kid, get_jwks(jwks_url))
    if public_key is None:
        logger.warning(f"KID '{kid}' not found in cached JWKS. Refreshing cache.")
        JWKS_CACHE.clear()
        public_key = _find_public_key(kid, get_jwks(jwks_url))
    return public_key


def _decode(token: str, settings: Settings) -> Dict[str, Any]:
    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise JWTError("Missing 'kid' in token header")

    public_key = _resolve_public_key(kid, settings.jwks_url)
    if public_key is None:
        raise JWTError(f"Public key not found for kid={kid} even after cache refresh")

    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )


# ============================================================================
# VERIFICATION
# ============================================================================

def verify_jwt(token: str, settings: Settings) -> Dict[str, Any]:
    """
    Verify signature, expiry, issuer and audience of a bearer token.

    Raises:
        HTTPException: 401 for any invalid token, 500 for unexpected failures
    """
    try:
        return _decode(token, settings)

    except ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )

    except JWTClaimsError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token claim: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    except HTTPException:
        raise

    except Exception as e:
        logger.error(f"Unexpected error during JWT verification: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication service error",
        )


def get_user_id_from_token(token: str, settings: Settings) -> Optional[str]:
    """
    Subject of a valid token, for rate-limit keys. Never raises.

    Returns None when the token cannot be verified so the caller can fall
    back to the client address.
    """
    try:
        return _decode(token, settings).get("sub")
    except Exception as e:
        logger.debug(f"Failed to extract user ID from token: {e}")
        return None


# ============================================================================
# FASTAPI DEPENDENCY
# ============================================================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Dict[str, Any]:
    """
    Decoded JWT payload of the caller, or ANONYMOUS_USER when auth is off.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return ANONYMOUS_USER

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verify_jwt(credentials.credentials, settings)
