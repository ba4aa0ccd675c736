"""Rate limiting for the signalsubs API.

Clients are bucketed by IP. X-Forwarded-For is only honoured when the
direct peer sits inside ``TRUSTED_PROXY_CIDRS``, so a client cannot pick
its own bucket. Per-route limits come from settings.
"""

import ipaddress
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("rate_limit")

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache
def parse_trusted_networks(cidrs: tuple[str, ...]) -> tuple[IPNetwork, ...]:
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr!r}")
    return tuple(networks)


def is_trusted_proxy(ip_str: str, networks: tuple[IPNetwork, ...]) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in networks)


def get_client_ip(request) -> str:
    """Leftmost X-Forwarded-For entry behind a trusted proxy, else the peer."""
    direct_ip = get_remote_address(request)
    networks = parse_trusted_networks(tuple(get_settings().trusted_proxy_cidrs))

    if is_trusted_proxy(direct_ip, networks):
        forwarded_for = request.headers.get("x-forwarded-for", "")
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    return direct_ip


# Limits are resolved per request so settings overrides take effect
def write_limit() -> str:
    return get_settings().write_rate_limit


def payment_limit() -> str:
    return get_settings().payment_rate_limit


def maintenance_limit() -> str:
    return get_settings().maintenance_rate_limit


limiter = Limiter(key_func=get_client_ip)
