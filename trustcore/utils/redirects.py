"""Open-redirect protection."""

from urllib.parse import urlsplit

from trustcore.config import settings
from trustcore.logging.config import get_logger

logger = get_logger(__name__)

SAFE_DEFAULT = "/"


def validate_redirect_url(url: str | None, allowed_hosts: frozenset[str] | None = None) -> str:
    """
    Reduce a user-supplied redirect target to a safe one.

    Relative paths pass through. Absolute http(s) URLs on an allowed host are
    reduced to their path and query. Everything else becomes "/".

    Args:
        url: Requested redirect target
        allowed_hosts: Host names accepted as absolute targets
            (defaults to settings.redirect_hosts)

    Returns:
        A same-site path
    """
    if not url:
        return SAFE_DEFAULT
    hosts = settings.redirect_hosts if allowed_hosts is None else allowed_hosts

    if url.startswith("/"):
        # //evil.com and /\evil.com are protocol-relative in browsers
        if url.startswith("//") or url.startswith("/\\"):
            logger.warning("Blocked protocol-relative redirect", extra={"context": {"url": url}})
            return SAFE_DEFAULT
        return url

    lowered = url.strip().lower()
    if lowered.startswith("javascript:") or lowered.startswith("data:"):
        logger.warning("Blocked script redirect", extra={"context": {"url": url}})
        return SAFE_DEFAULT

    try:
        parsed = urlsplit(url)
        host = parsed.hostname
    except ValueError:
        host = None
        parsed = None
    if parsed is None or parsed.scheme not in ("http", "https") or not host:
        logger.warning("Invalid redirect URL", extra={"context": {"url": url}})
        return SAFE_DEFAULT

    if host.lower() not in hosts:
        logger.warning(
            "Blocked external redirect", extra={"context": {"url": url, "host": host}}
        )
        return SAFE_DEFAULT

    path = parsed.path or SAFE_DEFAULT
    if path.startswith("//") or path.startswith("/\\"):
        return SAFE_DEFAULT
    return f"{path}?{parsed.query}" if parsed.query else path
