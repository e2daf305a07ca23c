"""IP address and whitelist helpers."""

import ipaddress
from typing import Iterable

from trustcore.exceptions import ValidationError
from trustcore.logging.config import get_logger

logger = get_logger(__name__)


def normalize_whitelist_entry(entry: str) -> str:
    """
    Validate one whitelist entry.

    Args:
        entry: Exact IPv4/IPv6 address or CIDR block

    Returns:
        The entry with surrounding whitespace removed

    Raises:
        ValidationError: If the entry is neither an address nor a CIDR block
    """
    value = entry.strip() if isinstance(entry, str) else ""
    try:
        if "/" in value:
            ipaddress.ip_network(value, strict=False)
        else:
            ipaddress.ip_address(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid IP whitelist entry: {entry!r}", field="ip_whitelist"
        ) from e
    return value


def validate_whitelist(entries: Iterable[str] | None) -> list[str]:
    """Validate every entry; an empty or missing list means unrestricted."""
    return [normalize_whitelist_entry(e) for e in entries or []]


def ip_in_whitelist(client_ip: str, whitelist: Iterable[str]) -> bool:
    """
    Check a caller IP against exact addresses and CIDR blocks.

    Args:
        client_ip: Caller address
        whitelist: Validated whitelist entries

    Returns:
        True if any entry matches; False for unparseable caller IPs
    """
    try:
        address = ipaddress.ip_address(client_ip.strip())
    except (ValueError, AttributeError):
        logger.debug("Unparseable client IP", extra={"context": {"client_ip": client_ip}})
        return False

    # IPv4-mapped IPv6 callers match IPv4 entries
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    for entry in whitelist:
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except (ValueError, TypeError):
            continue
    return False
