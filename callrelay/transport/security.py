# callrelay/transport/security.py
"""
Access control for the operational HTTP surface.

Admin routes take ``Authorization: Bearer $ADMIN_TOKEN``. Health, stats and
metrics routes take ``METRICS_TOKEN`` when one is set and are otherwise
reachable only from INTERNAL_NETWORKS.
"""
import hmac
import ipaddress
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from callrelay.config import settings
from callrelay.infra.logging_config import get_logger

logger = get_logger(__name__)

MIN_TOKEN_LENGTH = 32  # 256 bits of urlsafe base64
WEAK_TOKEN_PATTERNS = (
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
)

admin_bearer = HTTPBearer(scheme_name="Admin Token", auto_error=False)
metrics_bearer = HTTPBearer(scheme_name="Metrics Token", auto_error=False)

_UNAUTHORIZED_HEADERS = {"WWW-Authenticate": "Bearer"}


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """Warnings for a token that is short or contains a guessable word."""
    warnings = []
    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars), "
            f"use at least {MIN_TOKEN_LENGTH}"
        )

    lowered = token.lower()
    weak = next((p for p in WEAK_TOKEN_PATTERNS if p in lowered), None)
    if weak:
        warnings.append(f"{token_name} contains weak pattern '{weak}', generate a random one")
    return warnings


def check_configured_tokens() -> None:
    """Log weak ADMIN_TOKEN / METRICS_TOKEN values once at startup."""
    configured = {"ADMIN_TOKEN": settings.admin_token, "METRICS_TOKEN": settings.metrics_token}
    for name, token in configured.items():
        for warning in validate_token_strength(token or "", name) if token else ():
            logger.warning(f"SECURITY: {warning}")


def _check_bearer(credentials: HTTPAuthorizationCredentials | None, expected: str, scope: str) -> None:
    if credentials is None:
        logger.warning(f"{scope} endpoint called without a bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers=_UNAUTHORIZED_HEADERS,
        )

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        presented = credentials.credentials
        logger.warning(
            f"Rejected {scope} token",
            extra={"token_prefix": presented[:4] if len(presented) >= 4 else "***"},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers=_UNAUTHORIZED_HEADERS,
        )


def require_admin_auth(credentials: HTTPAuthorizationCredentials | None = Depends(admin_bearer)):
    """
    Guard for /admin routes.

        curl -X POST -H "Authorization: Bearer $ADMIN_TOKEN" \\
             -d '{"chat_id": "-100..."}' http://host/admin/calls/CA.../input-summary

    Without a configured ADMIN_TOKEN the routes answer 503 rather than run open.
    """
    if not settings.admin_token:
        logger.critical("Admin route called but ADMIN_TOKEN is not configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")
    _check_bearer(credentials, settings.admin_token, "admin")


@lru_cache(maxsize=1)
def _get_internal_networks() -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
    networks = []
    for cidr in filter(None, (part.strip() for part in settings.internal_networks.split(","))):
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Skipping invalid INTERNAL_NETWORKS entry {cidr!r}: {e}")
    return tuple(networks)


def _get_client_ip(request: Request) -> str:
    """Peer address; proxy headers count only when TRUST_PROXY_HEADERS is set."""
    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in network for network in _get_internal_networks())


def require_internal_network(request: Request):
    client_ip = _get_client_ip(request)
    if _is_internal_ip(client_ip):
        return
    logger.warning(f"Ops route refused for {client_ip}", extra={"client_ip": client_ip})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer),
):
    """Guard for health, stats and metrics routes."""
    if settings.metrics_token:
        _check_bearer(credentials, settings.metrics_token, "metrics")
    else:
        require_internal_network(request)


# Client-facing text per exception class name when running in production.
_PUBLIC_ERRORS = {
    "ValueError": "Invalid input",
    "KeyError": "Invalid request",
    "PostgresError": "Service temporarily unavailable",
    "ConnectionError": "Service temporarily unavailable",
    "TimeoutError": "Request timeout",
    "TelegramSendError": "Notification channel unavailable",
}


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    if not is_production:
        return str(error)
    return _PUBLIC_ERRORS.get(type(error).__name__, "An error occurred")
