import os

os.environ.setdefault("SKIP_MIGRATIONS", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "secret")

import pytest

from affiliate_engine.core.privacy import hash_ip, hash_user_agent


def test_hash_ip_deterministic_for_same_shop():
    assert hash_ip("demo-store", "203.0.113.10") == hash_ip("demo-store", "203.0.113.10")


def test_hashes_differ_across_shops():
    assert hash_ip("demo-store", "203.0.113.10") != hash_ip("other-store", "203.0.113.10")
    assert hash_user_agent("demo-store", "Mozilla/5.0") != hash_user_agent("other-store", "Mozilla/5.0")


def test_hash_ip_normalizes_address_text():
    assert hash_ip("demo-store", " 2001:DB8::1 ") == hash_ip("demo-store", "2001:db8::1")


def test_missing_values_hash_to_unknown():
    assert hash_ip("demo-store", None) == hash_ip("demo-store", "not-an-ip")
    assert hash_user_agent("demo-store", "") == hash_user_agent("demo-store", None)
    assert len(hash_ip("demo-store", None)) == 64


def test_shop_is_required():
    with pytest.raises(ValueError):
        hash_ip("", "203.0.113.10")
