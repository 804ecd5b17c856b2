# app/transport/security.py
"""
Security utilities for the dispatch API.

Security features:
- Actor tokens: ``<user_id>.<expires>.<hmac-sha256>`` signed with
  ACTOR_TOKEN_SECRET (the secret never travels, only the signature)
- Constant-time signature / token comparison (timing attack prevention)
- Token entropy validation (weak secret detection at startup)
- Metrics endpoints behind METRICS_TOKEN or internal network
- OWASP security headers
"""
import hmac
import hashlib
import ipaddress
import secrets
import time
from functools import lru_cache

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import settings
from app.infra.logging_config import get_logger
from app.infra.rate_limiter import client_ip

logger = get_logger(__name__)

# Minimum secret length (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

actor_bearer_scheme = HTTPBearer(
    scheme_name="Actor Token",
    description="Signed actor token: <user_id>.<expires>.<signature>",
    auto_error=False,
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Validate that a secret meets minimum security requirements.
    Returns list of warnings (empty if the secret is strong).
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)

    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def generate_secure_token(length: int = 32) -> str:
    """URL-safe random secret for ACTOR_TOKEN_SECRET / METRICS_TOKEN."""
    return secrets.token_urlsafe(length)


def check_configured_tokens():
    """Log warnings for weak secrets. Call from app startup."""
    for name, value in (
        ("ACTOR_TOKEN_SECRET", settings.actor_token_secret),
        ("METRICS_TOKEN", settings.metrics_token),
    ):
        if not value:
            continue
        for warning in validate_token_strength(value, name):
            logger.warning(f"SECURITY: {warning}")


# =============================================================================
# Actor tokens
# =============================================================================
# The credential store authenticates users and mints these tokens; this
# service only verifies them and reads the user id. Roles are always looked
# up from the user store, never taken from the token.
# =============================================================================

def _sign(user_id: str, expires: int, secret: str) -> str:
    return hmac.new(
        secret.encode(),
        f"{user_id}.{expires}".encode(),
        hashlib.sha256,
    ).hexdigest()


def issue_actor_token(
    user_id: str,
    *,
    ttl_seconds: int | None = None,
    secret: str | None = None,
    now: float | None = None,
) -> str:
    """Mint a signed actor token for ``user_id``."""
    secret = secret or settings.actor_token_secret
    if not secret:
        raise RuntimeError("ACTOR_TOKEN_SECRET required to issue actor tokens")
    if "." in user_id:
        raise ValueError("user_id must not contain '.'")

    ttl = ttl_seconds if ttl_seconds is not None else settings.actor_token_ttl_seconds
    expires = int(now if now is not None else time.time()) + ttl
    return f"{user_id}.{expires}.{_sign(user_id, expires, secret)}"


def verify_actor_token(
    token: str,
    *,
    secret: str | None = None,
    now: float | None = None,
) -> tuple[str | None, str | None]:
    """
    Verify an actor token.

    Returns:
        (user_id, None) if valid, (None, error_message) otherwise
    """
    secret = secret or settings.actor_token_secret
    if not secret:
        return None, "Server misconfigured (no actor token secret)"

    parts = token.rsplit(".", 2) if token else []
    if len(parts) != 3 or not all(parts):
        return None, "Malformed token"

    user_id, exp_str, sig = parts
    try:
        expires = int(exp_str)
    except ValueError:
        return None, "Malformed token"

    if not hmac.compare_digest(sig, _sign(user_id, expires, secret)):
        return None, "Invalid token signature"

    if (now if now is not None else time.time()) > expires:
        return None, "Token expired"

    return user_id, None


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(actor_bearer_scheme),
) -> str:
    """
    Dependency: authenticated actor id.

    Usage:
        @app.post("/api/...")
        async def route(actor_id: str = Depends(require_actor)):
            ...
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id, error = verify_actor_token(credentials.credentials)
    if user_id is None:
        logger.warning(f"Actor token rejected: {error}", extra={"client_ip": client_ip(request)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error,
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.actor_id = user_id
    return user_id


def actor_id_from_request(request: Request) -> str | None:
    """Verified actor id from the Authorization header, or None. Used as the rate-limit key."""
    auth = request.headers.get("Authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    user_id, _ = verify_actor_token(token.strip())
    return user_id


# =============================================================================
# Internal network / metrics access
# =============================================================================

@lru_cache(maxsize=1)
def _get_internal_networks() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """Parse and cache internal network CIDRs from settings."""
    networks = []
    for cidr in settings.internal_networks.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid CIDR in INTERNAL_NETWORKS: {cidr} - {e}")
    return networks


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        logger.warning(f"Invalid IP address format: {ip_str}")
        return False
    return any(ip in network for network in _get_internal_networks())


def require_internal_network(request: Request):
    """Dependency that only allows access from INTERNAL_NETWORKS."""
    ip = client_ip(request)
    if _is_internal_ip(ip):
        return

    logger.warning(f"Access denied from non-internal IP: {ip}", extra={"client_ip": ip})
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Forbidden"
    )


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Dependency for metrics/monitoring endpoints.

    1. If METRICS_TOKEN is set: require Bearer token authentication
    2. Otherwise: require internal network access
    """
    if settings.metrics_token:
        if not credentials:
            logger.warning("Metrics endpoint accessed without token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
            logger.warning("Invalid metrics token attempt")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return

    require_internal_network(request)


class SecurityHeaders:
    """OWASP recommended security headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        # HSTS only where TLS terminates in front of us
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Sanitize error messages for external responses.
    In production: Generic messages
    In dev: Detailed messages
    """
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }
    return generic_messages.get(type(error).__name__, "An error occurred")
