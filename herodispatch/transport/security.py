# herodispatch/transport/security.py
"""
Caller authentication for the hero and customer apps.

A caller token is ``<caller_id>.<signature>`` where the signature is
HMAC-SHA256(caller_token_secret, caller_id), hex-encoded. The secret never
leaves the server; tokens are issued with ``scripts/generate_token.py``.

Security features:
- Constant-time signature comparison (timing attack prevention)
- Secret strength check at startup
- Dev-only ``X-Caller-Id`` header when no secret is configured
- Metrics reachable from internal networks only in production
"""
import hashlib
import hmac
import ipaddress
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from herodispatch.config import settings
from herodispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum secret length (32 bytes = 256 bits)
MIN_SECRET_LENGTH = 32
WEAK_SECRET_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

DEV_CALLER_HEADER = "X-Caller-Id"

bearer_scheme = HTTPBearer(
    scheme_name="Caller Token",
    description="Caller token <caller_id>.<signature> (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_secret_strength(secret: str, name: str = "secret") -> list[str]:
    """
    Warnings for a weak signing secret (empty list if it looks strong).

    Checks:
    - Minimum length (32 chars)
    - Not a common weak pattern
    """
    warnings = []

    if len(secret) < MIN_SECRET_LENGTH:
        warnings.append(
            f"{name} is too short ({len(secret)} chars). "
            f"Minimum recommended: {MIN_SECRET_LENGTH} chars"
        )

    secret_lower = secret.lower()
    for pattern in WEAK_SECRET_PATTERNS:
        if pattern in secret_lower:
            warnings.append(
                f"{name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random secret"
            )
            break

    return warnings


def generate_secret(length: int = 32) -> str:
    """Random URL-safe secret for CALLER_TOKEN_SECRET."""
    return secrets.token_urlsafe(length)


def check_configured_secrets() -> None:
    """Log warnings for a weak caller token secret. Call from app startup."""
    if settings.caller_token_secret:
        for warning in validate_secret_strength(settings.caller_token_secret, "CALLER_TOKEN_SECRET"):
            logger.warning(f"SECURITY: {warning}")


def sign_caller_id(secret: str, caller_id: str) -> str:
    return hmac.new(secret.encode(), caller_id.encode(), hashlib.sha256).hexdigest()


def issue_caller_token(secret: str, caller_id: str) -> str:
    if not caller_id or "." in caller_id:
        raise ValueError("caller_id must be non-empty and must not contain '.'")
    return f"{caller_id}.{sign_caller_id(secret, caller_id)}"


def verify_caller_token(secret: str, token: str) -> str | None:
    """Caller id if the token's signature matches, else None."""
    caller_id, sep, signature = token.rpartition(".")
    if not sep or not caller_id or not signature:
        return None
    expected = sign_caller_id(secret, caller_id)
    if not hmac.compare_digest(signature, expected):
        return None
    return caller_id


async def require_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    Dependency resolving the authenticated caller id.

    Usage:
        @app.post("/jobs/{job_id}/accept")
        async def accept(job_id: str, caller_id: str = Depends(require_caller)):
            ...
    """
    secret = settings.caller_token_secret

    if not secret:
        caller_id = request.headers.get(DEV_CALLER_HEADER, "").strip()
        if settings.app_env == "dev" and caller_id:
            return caller_id
        if settings.app_env != "dev":
            logger.critical("CALLER_TOKEN_SECRET not configured but authenticated endpoint accessed")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service unavailable",
            )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {DEV_CALLER_HEADER} header",
        )

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    caller_id = verify_caller_token(secret, credentials.credentials)
    if caller_id is None:
        logger.warning("Invalid caller token", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.caller_id = caller_id
    return caller_id


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback


def require_metrics_access(request: Request) -> None:
    """
    Dependency for /metrics: 404 when metrics are disabled, and in
    production for callers outside private/loopback networks.
    """
    if not settings.enable_metrics:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    if not settings.is_production:
        return

    client_ip = request.client.host if request.client else "unknown"
    if not _is_internal_ip(client_ip):
        logger.warning(f"Metrics accessed from external IP: {client_ip}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
