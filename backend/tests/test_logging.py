import json
import logging
import os

from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("SKIP_MIGRATIONS", "1")

from affiliate_engine.main import app  # noqa: E402
from affiliate_engine.core.logging import JsonLogFormatter  # noqa: E402


def test_logging_includes_request_id_and_shop(caplog):
    logger = logging.getLogger("api_logger")
    logger.addHandler(caplog.handler)
    logger.setLevel(logging.INFO)
    try:
        client = TestClient(app)
        response = client.get(
            "/ping",
            headers={
                "X-Request-ID": "req-123",
                "X-Shopify-Shop-Domain": "demo-store.myshopify.com",
            },
        )
        assert response.status_code == 200
        assert response.headers.get("X-Request-ID") == "req-123"

        records = [record for record in caplog.records if record.getMessage() == "request.completed"]
        assert records, "Expected a structured request log entry"
        entry = records[-1]
        assert getattr(entry, "request_id", None) == "req-123"
        assert getattr(entry, "shop_id", None) == "demo-store.myshopify.com"
        assert getattr(entry, "route", None) == "/ping"
        assert getattr(entry, "status_code", None) == 200
    finally:
        logger.removeHandler(caplog.handler)


def test_json_formatter_keeps_extra_fields():
    record = logging.LogRecord(
        name="affiliate_engine.core.clicks",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="click.recorded",
        args=(),
        exc_info=None,
    )
    record.shop_id = "demo-store"
    record.click_id = "f" * 32
    record.referrer = None

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "click.recorded"
    assert payload["logger"] == "affiliate_engine.core.clicks"
    assert payload["level"] == "INFO"
    assert payload["shop_id"] == "demo-store"
    assert payload["click_id"] == "f" * 32
    assert "referrer" not in payload
    assert "lineno" not in payload
