import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure required settings exist before app import.
os.environ.setdefault("SKIP_MIGRATIONS", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "secret")

from affiliate_engine.main import app
from affiliate_engine.core.db import Base, get_db
from affiliate_engine.crud.clicks import get_click
from affiliate_engine.models.clicks import Click
from tests.factories import SHOP_DOMAIN, VISITOR_UA, make_affiliate


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'track.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)

    def fake_db():
        with TestSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = fake_db
    yield TestSessionLocal
    app.dependency_overrides.clear()


@pytest.fixture
def client(session_factory):
    return TestClient(app, headers={"User-Agent": VISITOR_UA})


@pytest.fixture
def affiliate_number(session_factory):
    with session_factory() as db:
        return make_affiliate(db).affiliate_number


def test_post_track_records_then_deduplicates(client, session_factory, affiliate_number):
    body = {
        "ref": str(affiliate_number),
        "shop": SHOP_DOMAIN,
        "landing_url": "https://demo-store.example/products/widget?ref=30483",
        "url_params": {"utm_source": "tiktok", "sub1": "video-7"},
        "timestamp": 1772366400000,
    }

    first = client.post("/track", json=body)
    second = client.post("/track", json={**body, "url_params": {"sub2": "pinned"}})

    assert first.status_code == 200
    data = first.json()
    assert data["success"] is True
    assert data["affiliateNumber"] == affiliate_number
    assert data["deduplicated"] is False
    assert second.json()["clickId"] == data["clickId"]
    assert second.json()["deduplicated"] is True

    with session_factory() as db:
        assert db.query(Click).count() == 1
        click = get_click(db, click_id=data["clickId"])
        assert click.landing_url == "https://demo-store.example/products/widget?ref=30483"
        assert click.url_params == {"utm_source": "tiktok", "sub1": "video-7", "sub2": "pinned"}
        assert click.url_sub1 == "video-7"
        assert click.url_sub2 == "pinned"


def test_get_track_reads_query_string(client, session_factory, affiliate_number):
    resp = client.get(
        "/track",
        params={"ref": affiliate_number, "shop": SHOP_DOMAIN, "utm_campaign": "spring", "transaction_id": "tx-42"},
        headers={"Referer": "https://instagram.example/story"},
    )

    assert resp.status_code == 200
    with session_factory() as db:
        click = get_click(db, click_id=resp.json()["clickId"])
        assert click.landing_url == "https://instagram.example/story"
        assert click.referrer == "https://instagram.example/story"
        assert click.url_params == {"utm_campaign": "spring", "transaction_id": "tx-42"}
        assert click.url_transaction_id == "tx-42"


@pytest.mark.parametrize(
    "body,status_code,code",
    [
        ({"ref": "internal", "shop": SHOP_DOMAIN}, 400, "internal_traffic"),
        ({"shop": SHOP_DOMAIN}, 400, "missing_ref"),
        ({"ref": "not-a-number", "shop": SHOP_DOMAIN}, 400, "invalid_affiliate_number"),
        ({"ref": "12", "shop": SHOP_DOMAIN}, 404, "affiliate_not_found"),
    ],
)
def test_post_track_rejections(client, session_factory, body, status_code, code):
    resp = client.post("/track", json=body)
    assert resp.status_code == status_code
    assert resp.json()["code"] == code
    assert resp.headers["X-Error-Code"] == code
    with session_factory() as db:
        assert db.query(Click).count() == 0


def test_bot_user_agent_is_rejected(session_factory, affiliate_number):
    bot_client = TestClient(app, headers={"User-Agent": "Googlebot/2.1 (+http://www.google.com/bot.html)"})
    resp = bot_client.post("/track", json={"ref": str(affiliate_number), "shop": SHOP_DOMAIN})
    assert resp.status_code == 400
    assert resp.json()["code"] == "bot_detected"


def test_cors_preflight_allows_storefront_origin(client):
    resp = client.options(
        "/track",
        headers={
            "Origin": "https://demo-store.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
