"""FastAPI dependencies: caller identity, API key auth, rate limits, locks."""

import ipaddress
from typing import AsyncIterator, Callable, Sequence

from fastapi import Depends, Header, Request, Response

from trustcore.container import ServiceContainer
from trustcore.exceptions import (
    GENERIC_AUTH_MESSAGE,
    AuthFailureError,
    RateLimitError,
    UnauthorizedError,
)
from trustcore.models.api_key import ApiKeyPublic
from trustcore.models.rate_limit import RateLimitResult
from trustcore.services.api_key_service import ApiKeyManager
from trustcore.services.lock_service import make_owner_token
from trustcore.services.rate_limiter import RateLimiter


def get_services(request: Request) -> ServiceContainer:
    """Service container attached to the app at startup."""
    return request.app.state.services


def _is_trusted_proxy(
    host: str, networks: Sequence[ipaddress.IPv4Network | ipaddress.IPv6Network]
) -> bool:
    try:
        address = ipaddress.ip_address(host.strip())
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return any(address in network for network in networks)


def client_ip(
    request: Request, services: ServiceContainer = Depends(get_services)
) -> str:
    """
    Caller IP as seen by the whitelist and per-IP rate limits.

    X-Forwarded-For is honored only when the socket peer is a configured
    trusted proxy. The chain is then walked right to left and the first hop
    that is not itself a trusted proxy is the caller. Any other peer gets
    its own address, whatever headers it sends.

    Args:
        request: The incoming request
        services: Container holding the trusted proxy settings

    Returns:
        IP address string, or "unknown"
    """
    peer = request.client.host if request.client else None
    if peer is None:
        return "unknown"

    networks = services.settings.trusted_proxy_networks
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded or not networks or not _is_trusted_proxy(peer, networks):
        return peer

    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted_proxy(hop, networks):
            return hop
    return hops[0] if hops else peer


async def current_user_id(
    request: Request, x_user_id: str | None = Header(None, alias="X-User-ID")
) -> str:
    """
    Authenticated user id, set by the session gateway in front of this service.

    Raises:
        AuthFailureError: If no user is attached to the request
    """
    if not x_user_id:
        raise AuthFailureError(details={"hint": "Authentication required"})
    request.state.user_id = x_user_id
    return x_user_id


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    x_api_secret: str | None = Header(None, alias="X-API-Secret"),
    ip: str = Depends(client_ip),
    services: ServiceContainer = Depends(get_services),
) -> ApiKeyPublic:
    """
    Validate the API key/secret headers and return the key record.

    Raises:
        AuthFailureError: If the headers are missing or the credentials are wrong
        UnauthorizedError: If the caller IP is not whitelisted
        RateLimitError: If the key's own budget is exhausted
    """
    if not x_api_key or not x_api_secret:
        raise AuthFailureError(details={"hint": "Include X-API-Key and X-API-Secret headers"})

    result = await services.api_keys.validate_key(x_api_key, x_api_secret, ip)
    if not result.valid:
        if result.retry_after:
            raise RateLimitError(retry_after=result.retry_after)
        if result.error and result.error != GENERIC_AUTH_MESSAGE:
            raise UnauthorizedError(result.error)
        raise AuthFailureError()

    request.state.api_key_id = result.key.key_id
    request.state.user_id = result.key.user_id
    return result.key


def require_permission(scope: str) -> Callable:
    """
    Dependency factory: the API key must carry `scope` (or all-access).

    Args:
        scope: Permission scope, e.g. "read:orders"

    Returns:
        Dependency resolving to the authorized key
    """

    async def check_permission(key: ApiKeyPublic = Depends(require_api_key)) -> ApiKeyPublic:
        if not ApiKeyManager.has_permission(key, scope):
            raise UnauthorizedError(
                f"API key lacks required permission: {scope}", details={"required": scope}
            )
        return key

    return check_permission


def rate_limit(profile: str) -> Callable:
    """
    Dependency factory enforcing a named rate-limit profile.

    Counts per user when one is attached to the request, else per IP, and
    sets X-RateLimit-* headers on the response.
    """

    async def check_rate_limit(
        request: Request,
        response: Response,
        ip: str = Depends(client_ip),
        services: ServiceContainer = Depends(get_services),
    ) -> RateLimitResult:
        subject = RateLimiter.client_key(ip, getattr(request.state, "user_id", None))
        result = await services.rate_limiter.check_profile(profile, subject)

        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_at // 1000)

        if not result.allowed:
            raise RateLimitError(
                message="Too many requests, please try again later",
                retry_after=result.retry_after or 1,
                details={"limit": result.limit, "reset_at": result.reset_at},
            )
        return result

    return check_rate_limit


def hold_lock(resource: Callable[[Request], str], ttl_ms: int | None = None) -> Callable:
    """
    Dependency factory holding a distributed lock for the whole request.

    Args:
        resource: Builds the lock key from the request
        ttl_ms: Lock lifetime (defaults to the lock manager's)

    Returns:
        Yield dependency; 423 when another request holds the lock
    """

    async def lock_dependency(
        request: Request,
        ip: str = Depends(client_ip),
        services: ServiceContainer = Depends(get_services),
    ) -> AsyncIterator[str]:
        lock_key = resource(request)
        owner = make_owner_token(ip, getattr(request.state, "user_id", None))
        async with services.lock_manager.hold(lock_key, owner, ttl_ms):
            yield lock_key

    return lock_dependency
