import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# Hard ceiling for any scan, whatever MAX_SCAN_LIMIT says
ABSOLUTE_SCAN_CEILING = 1_000_000

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


# Rate limits are bound by route decorators at import time
RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
RATE_LIMIT_READ = os.environ.get("RATE_LIMIT_READ", "100/minute")
RATE_LIMIT_WRITE = os.environ.get("RATE_LIMIT_WRITE", "50/minute")
CORS_ORIGINS = _env_list("CORS_ORIGINS") or ("http://localhost:3000", "http://localhost:8000")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once at startup."""

    project_id: str
    instance_ids: Tuple[str, ...]
    column_family: str = "cf1"
    column_qualifier: str = "name"
    verify_instances: bool = False
    default_scan_limit: int = 1000
    max_scan_limit: int = 100_000
    auth_enabled: bool = True
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None
    jwks_url: Optional[str] = None


def load_settings() -> Settings:
    """
    Build Settings from the environment (.env is loaded on import).

    Raises:
        ValueError: a required variable is missing or a limit is invalid
    """
    project_id = os.environ.get("GCP_PROJECT_ID", "").strip()
    instance_ids = _env_list("GCP_INSTANCE_ID_LIST")

    if not project_id or not instance_ids:
        raise ValueError(
            "GCP_PROJECT_ID and GCP_INSTANCE_ID_LIST must be set in environment. "
            "Example: GCP_INSTANCE_ID_LIST=kv-instance-a,kv-instance-b"
        )

    default_scan_limit = int(os.environ.get("DEFAULT_SCAN_LIMIT", 1000))
    max_scan_limit = min(
        int(os.environ.get("MAX_SCAN_LIMIT", 100_000)), ABSOLUTE_SCAN_CEILING
    )
    if default_scan_limit <= 0 or max_scan_limit <= 0:
        raise ValueError("DEFAULT_SCAN_LIMIT and MAX_SCAN_LIMIT must be positive")
    default_scan_limit = min(default_scan_limit, max_scan_limit)

    auth_enabled = _env_bool("AUTH_ENABLED", True)
    issuer = os.environ.get("JWT_ISSUER") or None
    audience = os.environ.get("JWT_AUDIENCE") or None
    if auth_enabled and (not issuer or not audience):
        raise ValueError(
            "JWT_ISSUER and JWT_AUDIENCE must be set when AUTH_ENABLED is on. "
            "Example: JWT_ISSUER=https://example.okta.com/oauth2/default"
        )
    jwks_url = os.environ.get("JWKS_URL") or (
        f"{issuer.rstrip('/')}/v1/keys" if issuer else None
    )

    return Settings(
        project_id=project_id,
        instance_ids=instance_ids,
        column_family=os.environ.get("GCP_BIGTABLE_COLUMN_FAMILY", "cf1"),
        column_qualifier=os.environ.get("GCP_BIGTABLE_COLUMN_QUALIFIER", "name"),
        verify_instances=_env_bool("BIGTABLE_VERIFY_INSTANCES", False),
        default_scan_limit=default_scan_limit,
        max_scan_limit=max_scan_limit,
        auth_enabled=auth_enabled,
        jwt_issuer=issuer,
        jwt_audience=audience,
        jwks_url=jwks_url,
    )

##WHY ENV-ONLY?
##Instances are added by redeploying with a new GCP_INSTANCE_ID_LIST (no code change).
##The registry is built from this list once, so it is auditable in one place.
