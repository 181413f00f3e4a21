"""
Visitor IP resolution for the click beacon and webhook requests.

Forwarding headers are honoured only when TRUST_PROXY_HEADERS is on and the
direct peer sits inside one of TRUSTED_PROXY_IPS. Otherwise the socket peer
is the visitor.
"""

from __future__ import annotations

from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Iterable, Mapping, Union

from fastapi import Request

from affiliate_engine.core.config import settings

Network = Union[IPv4Network, IPv6Network]


def normalize_ip(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return ip_address(value.strip()).compressed
    except ValueError:
        return None


def pick_forwarded_ip(chain: str | None) -> str | None:
    """
    Choose the visitor from an X-Forwarded-For chain: the left-most public
    address, or the left-most valid one when every hop is private.
    """
    valid = [ip for ip in (normalize_ip(part) for part in (chain or "").split(",")) if ip]
    for candidate in valid:
        if ip_address(candidate).is_global:
            return candidate
    return valid[0] if valid else None


def _trusted_networks(entries: Iterable[str]) -> list[Network]:
    networks = []
    for entry in entries:
        try:
            networks.append(ip_network(entry, strict=False))
        except ValueError:
            continue
    return networks


def peer_is_trusted_proxy(peer: str | None, trusted: Iterable[str]) -> bool:
    peer_ip = normalize_ip(peer)
    if peer_ip is None:
        return False
    address = ip_address(peer_ip)
    return any(address in network for network in _trusted_networks(trusted))


def ip_from_headers(headers: Mapping[str, str], header_names: Iterable[str]) -> str | None:
    for name in header_names:
        raw = headers.get(name)
        if not raw:
            continue
        if name.lower() == "x-forwarded-for":
            found = pick_forwarded_ip(raw)
        else:
            found = normalize_ip(raw.split(",")[0])
        if found:
            return found
    return None


def extract_client_ip(request: Request) -> str | None:
    peer = request.client.host if request.client else None
    if settings.TRUST_PROXY_HEADERS and peer_is_trusted_proxy(peer, settings.TRUSTED_PROXY_IPS):
        forwarded = ip_from_headers(request.headers, settings.TRUSTED_IP_HEADERS)
        if forwarded:
            return forwarded
    return normalize_ip(peer)
