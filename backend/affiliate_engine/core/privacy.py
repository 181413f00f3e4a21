"""
Keyed hashing helpers for click fingerprints.

Raw IPs and user agents are never stored. Each shop gets its own salt derived
from SECRET_KEY, so the same visitor hashes differently across shops.
"""

from __future__ import annotations

import hashlib
import hmac
from ipaddress import ip_address

from affiliate_engine.core.config import settings


def _normalize_ip(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("ip value is required")
    return str(ip_address(value.strip()))


def shop_hash_salt(shop_id: str) -> bytes:
    if not shop_id:
        raise ValueError("shop_id is required for fingerprint hashing")
    secret = settings.SECRET_KEY.encode("utf-8")
    message = f"shop:{shop_id}".encode("utf-8")
    return hmac.new(secret, message, hashlib.sha256).digest()


def hash_ip(shop_id: str, ip_str: str | None) -> str:
    # Unparseable or missing IPs still hash to a stable value per shop.
    try:
        normalized = _normalize_ip(ip_str or "")
    except ValueError:
        normalized = "unknown"
    salt = shop_hash_salt(shop_id)
    return hmac.new(salt, normalized.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_user_agent(shop_id: str, user_agent: str | None) -> str:
    normalized = (user_agent or "unknown").strip() or "unknown"
    salt = shop_hash_salt(shop_id)
    return hmac.new(salt, normalized.encode("utf-8"), hashlib.sha256).hexdigest()
