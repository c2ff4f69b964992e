"""
Client address resolution and the YooKassa webhook source check.
"""
import ipaddress
import logging

from starlette.requests import Request

from app.core.config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Client IP (supports X-Forwarded-For from a trusted proxy)."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        trusted = settings.trusted_proxy_ips_set
        if trusted and request.client and request.client.host in trusted:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


def is_allowed_webhook_source(client_ip: str, networks: list[str] | None = None) -> bool:
    """True if client_ip belongs to one of the published YooKassa networks."""
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for network in networks if networks is not None else settings.webhook_allowed_networks:
        try:
            if address in ipaddress.ip_network(network, strict=False):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_invalid_network", extra={"error": network})
    return False
