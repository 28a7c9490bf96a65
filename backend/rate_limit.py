# rate_limit.py — Request rate limits (slowapi)
# Login 5/min and TOTP verification 3/min per client address; everything
# else shares the 50 per 3 minutes default applied by SlowAPIMiddleware.
# RATE_LIMIT_ENABLED=false turns every limit off (tests, trusted networks).
# X-Forwarded-For is only read when the direct peer is in TRUSTED_PROXIES.

import ipaddress
from typing import Iterable, List, Optional, Union

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from config import get_settings

DEFAULT_LIMIT = "50/3 minutes"
LOGIN_LIMIT = "5/minute"
TOTP_VERIFY_LIMIT = "3/minute"

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_networks(entries: Iterable[str]) -> List[Network]:
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry.strip(), strict=False))
        except ValueError:
            continue
    return networks


def is_trusted(address: str, networks: List[Network]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in net for net in networks)


def resolve_client_ip(request: Request, trusted: Optional[Iterable[str]] = None) -> str:
    """Address of the client that sent the request.

    Forwarded hops are walked right to left and the first one not belonging to
    a trusted proxy wins. A peer outside the trusted set is taken as-is.
    """
    peer = get_remote_address(request)
    networks = parse_networks(get_settings().trusted_proxies if trusted is None else trusted)
    if not networks or not is_trusted(peer, networks):
        return peer
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not is_trusted(hop, networks):
            return hop
    return hops[0] if hops else peer


def client_key(request: Request) -> str:
    return resolve_client_ip(request)


limiter = Limiter(
    key_func=client_key,
    default_limits=[DEFAULT_LIMIT],
    enabled=get_settings().rate_limit_enabled,
)
