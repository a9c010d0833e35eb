# socialbank/transport/security.py
"""
Access control for the operational endpoints.

- Bearer tokens compared in constant time
- Admin and metrics use separate tokens
- An unset token disables the endpoint instead of opening it
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from socialbank.config import settings
from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """Return human-readable problems with a configured token (empty list = OK)."""
    issues = []
    if len(token) < MIN_TOKEN_LENGTH:
        issues.append(f"{token_name} is shorter than {MIN_TOKEN_LENGTH} characters")
    lowered = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in lowered:
            issues.append(f"{token_name} contains weak pattern '{pattern}'")
            break
    if len(set(token)) < 8:
        issues.append(f"{token_name} has too few distinct characters")
    return issues


def check_configured_tokens() -> None:
    """Log a warning for every weak configured token. Called once at startup."""
    for name, value in (("admin_token", settings.admin_token), ("metrics_token", settings.metrics_token)):
        if not value:
            continue
        for issue in validate_token_strength(value, name):
            logger.warning(f"Weak token: {issue}")


def _check_bearer(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
    expected: str,
    kind: str,
) -> None:
    if not credentials:
        logger.warning(f"{kind} endpoint accessed without authorization header", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning(
            f"Invalid {kind.lower()} token attempt",
            extra={"path": request.url.path, "token_prefix": token[:4] if len(token) >= 4 else "***"},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Dependency for admin endpoints.

    Usage:
        @app.post("/admin/cleanup", dependencies=[Depends(require_admin_auth)])

    Client example:
        curl -X POST -H "Authorization: Bearer $ADMIN_TOKEN" http://host/admin/cleanup
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )
    _check_bearer(request, credentials, settings.admin_token, "Admin")


async def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """Dependency for /metrics; disabled (404) while METRICS_TOKEN is unset."""
    if not settings.metrics_token:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    _check_bearer(request, credentials, settings.metrics_token, "Metrics")

