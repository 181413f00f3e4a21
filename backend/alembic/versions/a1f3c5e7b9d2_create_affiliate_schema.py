"""create affiliate attribution schema

Revision ID: a1f3c5e7b9d2
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a1f3c5e7b9d2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON_TYPE = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _delivery_columns() -> list[sa.Column]:
    return [
        sa.Column("request_params", JSON_TYPE, nullable=True),
        sa.Column("status", sa.String(length=7), nullable=False, server_default="PENDING"),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
    ]


def _index_timestamps(table: str) -> None:
    op.create_index(op.f(f"ix_{table}_id"), table, ["id"], unique=False)
    op.create_index(op.f(f"ix_{table}_created_at"), table, ["created_at"], unique=False)


def upgrade() -> None:
    op.create_table(
        "offers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("offer_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("commission_type", sa.String(length=10), nullable=False, server_default="PERCENTAGE"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("attribution_window_days", sa.Integer(), nullable=False, server_default="90"),
        sa.Column("selling_subscriptions", sa.String(length=17), nullable=False, server_default="NO"),
        sa.Column("subscription_max_payments", sa.Integer(), nullable=True),
        sa.Column("subscription_rebill_commission_type", sa.String(length=10), nullable=True),
        sa.Column("subscription_rebill_commission_value", sa.Numeric(10, 2), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("shop_id", "offer_number", name="uq_offers_shop_number"),
    )
    _index_timestamps("offers")
    op.create_index("ix_offers_shop_id", "offers", ["shop_id"], unique=False)

    op.create_table(
        "affiliates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("affiliate_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("status", sa.String(length=9), nullable=False, server_default="ACTIVE"),
        sa.Column("offer_id", sa.Integer(), sa.ForeignKey("offers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("payout_terms_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("webhook_url", sa.String(), nullable=True),
        sa.Column("webhook_parameter_mapping", JSON_TYPE, nullable=True),
        sa.Column("postback_transaction_id", sa.String(), nullable=True),
        sa.Column("postback_affiliate_id", sa.String(), nullable=True),
        sa.Column("postback_sub1", sa.String(), nullable=True),
        sa.Column("postback_sub2", sa.String(), nullable=True),
        sa.Column("postback_sub3", sa.String(), nullable=True),
        sa.Column("postback_sub4", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("shop_id", "affiliate_number", name="uq_affiliates_shop_number"),
    )
    _index_timestamps("affiliates")
    op.create_index("ix_affiliates_shop_status", "affiliates", ["shop_id", "status"], unique=False)
    op.create_index("ix_affiliates_shop_email", "affiliates", ["shop_id", "email"], unique=False)

    op.create_table(
        "affiliate_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("destination_url", sa.String(), nullable=False),
        sa.Column("coupon_code", sa.String(), nullable=True),
        *_timestamps(),
    )
    _index_timestamps("affiliate_links")
    op.create_index("ix_affiliate_links_affiliate", "affiliate_links", ["affiliate_id"], unique=False)
    op.create_index("ix_affiliate_links_shop_coupon", "affiliate_links", ["shop_id", "coupon_code"], unique=False)

    op.create_table(
        "clicks",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("link_id", sa.Integer(), sa.ForeignKey("affiliate_links.id", ondelete="SET NULL"), nullable=True),
        sa.Column("landing_url", sa.Text(), nullable=False),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("ip_hash", sa.String(length=64), nullable=False),
        sa.Column("user_agent_hash", sa.String(length=64), nullable=False),
        sa.Column("url_transaction_id", sa.String(), nullable=True),
        sa.Column("url_affiliate_id", sa.String(), nullable=True),
        sa.Column("url_sub1", sa.String(), nullable=True),
        sa.Column("url_sub2", sa.String(), nullable=True),
        sa.Column("url_sub3", sa.String(), nullable=True),
        sa.Column("url_sub4", sa.String(), nullable=True),
        sa.Column("url_params", JSON_TYPE, nullable=True),
        *_timestamps(),
    )
    op.create_index(op.f("ix_clicks_created_at"), "clicks", ["created_at"], unique=False)
    op.create_index(
        "ix_clicks_dedupe",
        "clicks",
        ["shop_id", "affiliate_id", "ip_hash", "user_agent_hash", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_clicks_fingerprint",
        "clicks",
        ["shop_id", "ip_hash", "user_agent_hash", "created_at"],
        unique=False,
    )
    op.create_index("ix_clicks_affiliate_created", "clicks", ["affiliate_id", "created_at"], unique=False)

    op.create_table(
        "order_attributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("shopify_order_id", sa.String(), nullable=False),
        sa.Column("shopify_order_number", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id", ondelete="SET NULL"), nullable=True),
        sa.Column("click_id", sa.String(length=32), sa.ForeignKey("clicks.id", ondelete="SET NULL"), nullable=True),
        sa.Column("attribution_type", sa.String(length=11), nullable=False),
        sa.Column("attribution_method", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("order_total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("order_currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("landing_url_params", JSON_TYPE, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("shopify_order_id", name="uq_order_attributions_order"),
    )
    _index_timestamps("order_attributions")
    op.create_index(
        "ix_order_attributions_shop_affiliate",
        "order_attributions",
        ["shop_id", "affiliate_id"],
        unique=False,
    )
    op.create_index("ix_order_attributions_click", "order_attributions", ["click_id"], unique=False)

    op.create_table(
        "subscription_attributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("original_order_id", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("selling_plan_id", sa.String(), nullable=False),
        sa.Column("interval_months", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_payments", sa.Integer(), nullable=True),
        sa.Column("payments_made", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "original_order_id",
            "selling_plan_id",
            name="uq_subscription_attributions_order_plan",
        ),
    )
    _index_timestamps("subscription_attributions")
    op.create_index(
        "ix_subscription_attributions_affiliate_plan",
        "subscription_attributions",
        ["shop_id", "affiliate_id", "selling_plan_id", "active"],
        unique=False,
    )

    op.create_table(
        "commissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "order_attribution_id",
            sa.Integer(),
            sa.ForeignKey("order_attributions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("shopify_order_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=8), nullable=False, server_default="PENDING"),
        sa.Column("eligible_date", sa.DateTime(), nullable=False),
        sa.Column("rule_snapshot", JSON_TYPE, nullable=False),
        sa.Column("reversal_reason", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("shopify_order_id", "shop_id", name="uq_commissions_order_shop"),
    )
    _index_timestamps("commissions")
    op.create_index("ix_commissions_affiliate_status", "commissions", ["affiliate_id", "status"], unique=False)
    op.create_index("ix_commissions_shop_status", "commissions", ["shop_id", "status"], unique=False)

    op.create_table(
        "fraud_flags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("commission_id", sa.Integer(), sa.ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("flag_type", sa.String(length=16), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        *_timestamps(),
    )
    _index_timestamps("fraud_flags")
    op.create_index("ix_fraud_flags_commission", "fraud_flags", ["commission_id"], unique=False)
    op.create_index("ix_fraud_flags_affiliate_resolved", "fraud_flags", ["affiliate_id", "resolved"], unique=False)

    op.create_table(
        "affiliate_webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("commission_id", sa.Integer(), sa.ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=False),
        sa.Column("request_method", sa.String(), nullable=False, server_default="GET"),
        *_delivery_columns(),
        *_timestamps(),
    )
    _index_timestamps("affiliate_webhook_logs")
    op.create_index(
        "ix_affiliate_webhook_logs_status_attempt",
        "affiliate_webhook_logs",
        ["status", "last_attempt_at"],
        unique=False,
    )
    op.create_index("ix_affiliate_webhook_logs_commission", "affiliate_webhook_logs", ["commission_id"], unique=False)

    op.create_table(
        "postback_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("base_url", sa.Text(), nullable=False),
        sa.Column("param_mappings", JSON_TYPE, nullable=False),
        sa.Column("trigger_event", sa.String(length=10), nullable=False, server_default="CONVERSION"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    _index_timestamps("postback_templates")
    op.create_index(
        "ix_postback_templates_shop_trigger",
        "postback_templates",
        ["shop_id", "trigger_event", "active"],
        unique=False,
    )

    op.create_table(
        "postback_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("commission_id", sa.Integer(), sa.ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "postback_template_id",
            sa.Integer(),
            sa.ForeignKey("postback_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=False),
        *_delivery_columns(),
        *_timestamps(),
    )
    _index_timestamps("postback_logs")
    op.create_index("ix_postback_logs_status_attempt", "postback_logs", ["status", "last_attempt_at"], unique=False)
    op.create_index("ix_postback_logs_commission", "postback_logs", ["commission_id"], unique=False)

    op.create_table(
        "shop_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("shop_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=16), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("shop_id", "name", name="uq_shop_sequences_shop_name"),
    )
    _index_timestamps("shop_sequences")
    op.create_index("ix_shop_sequences_shop_id", "shop_sequences", ["shop_id"], unique=False)


def downgrade() -> None:
    for table in (
        "shop_sequences",
        "postback_logs",
        "postback_templates",
        "affiliate_webhook_logs",
        "fraud_flags",
        "commissions",
        "subscription_attributions",
        "order_attributions",
        "clicks",
        "affiliate_links",
        "affiliates",
        "offers",
    ):
        op.drop_table(table)
