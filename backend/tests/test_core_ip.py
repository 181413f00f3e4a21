import os

import pytest
from starlette.requests import Request

os.environ.setdefault("SKIP_MIGRATIONS", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "secret")

from affiliate_engine.core.config import settings
from affiliate_engine.core.ip import extract_client_ip, pick_forwarded_ip


def _beacon_request(headers=None, peer="203.0.113.10"):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/track",
        "headers": [(k.lower().encode("ascii"), v.encode("ascii")) for k, v in (headers or {}).items()],
        "client": (peer, 51234),
        "server": ("testserver", 80),
        "scheme": "https",
        "query_string": b"",
        "root_path": "",
    }
    return Request(scope)


@pytest.fixture
def behind_proxy(monkeypatch):
    monkeypatch.setattr(settings, "TRUST_PROXY_HEADERS", True)
    monkeypatch.setattr(settings, "TRUSTED_PROXY_IPS", ["10.0.0.0/8", "not-a-network"])
    monkeypatch.setattr(settings, "TRUSTED_IP_HEADERS", ["CF-Connecting-IP", "X-Forwarded-For"])


def test_forwarded_headers_ignored_when_proxy_trust_disabled(monkeypatch):
    monkeypatch.setattr(settings, "TRUST_PROXY_HEADERS", False)
    req = _beacon_request(headers={"X-Forwarded-For": "1.1.1.1"})
    assert extract_client_ip(req) == "203.0.113.10"


def test_cloudflare_header_wins_behind_trusted_proxy(behind_proxy):
    req = _beacon_request(
        headers={"CF-Connecting-IP": "9.9.9.9", "X-Forwarded-For": "1.1.1.1, 10.0.0.5"},
        peer="10.0.0.5",
    )
    assert extract_client_ip(req) == "9.9.9.9"


def test_untrusted_peer_is_the_visitor(behind_proxy):
    req = _beacon_request(headers={"X-Forwarded-For": "1.1.1.1"}, peer="198.51.100.4")
    assert extract_client_ip(req) == "198.51.100.4"


def test_unusable_headers_fall_back_to_peer(behind_proxy):
    req = _beacon_request(headers={"CF-Connecting-IP": "garbage"}, peer="10.0.0.5")
    assert extract_client_ip(req) == "10.0.0.5"


@pytest.mark.parametrize(
    "chain, expected",
    [
        ("10.0.0.2, unknown, 8.8.8.8, 192.168.0.1", "8.8.8.8"),
        ("192.168.1.4, 10.0.0.2", "192.168.1.4"),
        ("unknown", None),
        (None, None),
    ],
)
def test_pick_forwarded_ip(chain, expected):
    assert pick_forwarded_ip(chain) == expected
