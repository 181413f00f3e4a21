import os
from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "secret")
os.environ["SKIP_MIGRATIONS"] = "1"

from affiliate_engine.core.commissions import reverse_commissions_for_order
from affiliate_engine.core.config import settings
from affiliate_engine.core.db import Base
from affiliate_engine.core.fraud import check_self_referral, resolve_fraud_flag, run_fraud_checks
from affiliate_engine.crud.fraud_flags import list_flags_for_commission
from affiliate_engine.models.enums import CommissionStatusEnum, FraudFlagTypeEnum
from tests.factories import SHOP_ID, make_affiliate, make_attribution, make_click, make_commission


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _setup_db(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fraud.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def _commission(db, affiliate, order_id):
    attribution = make_attribution(db, affiliate=affiliate, order_id=order_id)
    return make_commission(db, attribution=attribution, now=NOW)


def test_self_referral_email_match_raises_flag(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        affiliate = make_affiliate(db, email="Creator@Example.com")
        commission = _commission(db, affiliate, "8001")

        flags = run_fraud_checks(db, commission=commission, order_email=" creator@example.com ", now=NOW)
        db.commit()

        assert len(flags) == 1
        assert flags[0].flag_type == FraudFlagTypeEnum.SELF_REFERRAL
        assert flags[0].score == 50
        assert flags[0].reason == "Email matches affiliate email"
        db.refresh(commission)
        assert commission.status == CommissionStatusEnum.PENDING


def test_same_ip_alone_stays_below_threshold(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        affiliate = make_affiliate(db)
        clicks = [
            make_click(db, affiliate=affiliate, created_at=NOW - timedelta(hours=hours))
            for hours in range(6, 0, -1)
        ]
        ip_hash = clicks[0].ip_hash

        ip_only = check_self_referral(
            db,
            affiliate_id=affiliate.id,
            affiliate_email=affiliate.email,
            order_email="someone@example.net",
            click_ip_hash=ip_hash,
            now=NOW,
        )
        with_email = check_self_referral(
            db,
            affiliate_id=affiliate.id,
            affiliate_email=affiliate.email,
            order_email=affiliate.email,
            click_ip_hash=ip_hash,
            now=NOW,
        )

        assert ip_only.score == 30
        assert ip_only.should_flag is False
        assert with_email.score == 80
        assert with_email.should_flag is True
        assert "Same IP as affiliate with 6 clicks" in with_email.reason


def test_excessive_clicks_flag(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "FRAUD_EXCESSIVE_CLICKS_THRESHOLD", 3)
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        affiliate = make_affiliate(db)
        for index in range(4):
            make_click(db, affiliate=affiliate, created_at=NOW - timedelta(minutes=10), ip=f"198.51.100.{index + 1}")
        make_click(db, affiliate=affiliate, created_at=NOW - timedelta(hours=30), ip="198.51.100.99")
        commission = _commission(db, affiliate, "8002")

        flags = run_fraud_checks(db, commission=commission, order_email=None, now=NOW)

        assert [flag.flag_type for flag in flags] == [FraudFlagTypeEnum.EXCESSIVE_CLICKS]
        assert flags[0].score == 67
        assert flags[0].reason == "4 clicks in last 24 hours"


def test_high_refund_rate_flag(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        affiliate = make_affiliate(db)
        _commission(db, affiliate, "8003")
        reverse_commissions_for_order(db, shop_id=SHOP_ID, shopify_order_id="8003", reason="refunded")
        commission = _commission(db, affiliate, "8004")

        flags = run_fraud_checks(db, commission=commission, order_email=None, now=NOW)

        assert [flag.flag_type for flag in flags] == [FraudFlagTypeEnum.HIGH_REFUND_RATE]
        assert flags[0].score == 100
        assert flags[0].reason == "100.0% refund rate (1/1)"


def test_resolve_fraud_flag(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        affiliate = make_affiliate(db, email="creator@example.com")
        commission = _commission(db, affiliate, "8005")
        run_fraud_checks(db, commission=commission, order_email="creator@example.com", now=NOW)
        db.commit()
        flag = list_flags_for_commission(db, commission_id=commission.id, unresolved_only=True)[0]

        resolved = resolve_fraud_flag(db, flag_id=flag.id, note="affiliate's own test order", now=NOW)

        assert resolved.resolved is True
        assert resolved.resolved_at == NOW
        assert resolved.resolution_note == "affiliate's own test order"
        assert list_flags_for_commission(db, commission_id=commission.id, unresolved_only=True) == []
        assert resolve_fraud_flag(db, flag_id=999999) is None
