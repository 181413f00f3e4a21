"""
Shop-level postback templates (network S2S pixels) fired on commission events.
"""

from __future__ import annotations

import logging
from datetime import datetime
from urllib.parse import parse_qsl, urlencode, urlparse

from sqlalchemy.orm import Session

from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.commissions import get_commission
from affiliate_engine.crud.webhook_logs import create_postback_log, list_active_templates
from affiliate_engine.models.enums import PostbackTriggerEnum
from affiliate_engine.models.webhook_logs import PostbackLog, PostbackTemplate
from affiliate_engine.notifications.affiliate_webhooks import RenderedUrl, build_webhook_data_map
from affiliate_engine.notifications.delivery import attempt_delivery
from affiliate_engine.notifications.senders.base import DeliverySender

logger = logging.getLogger(__name__)

NOTIFICATION_KIND = "postback"


def build_postback_params(data_map: dict[str, str]) -> dict[str, str]:
    params = dict(data_map)
    params.setdefault("currency", data_map.get("commission_currency", ""))
    params.setdefault("status", data_map.get("commission_status", ""))
    return params


def render_postback_url(template: PostbackTemplate, params: dict[str, str]) -> RenderedUrl:
    mappings = template.param_mappings if isinstance(template.param_mappings, dict) else {}
    query = []
    for source, query_name in mappings.items():
        value = params.get(source)
        if not value or not query_name:
            continue
        query.append((str(query_name), value))
    url = template.base_url
    if query:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{urlencode(query)}"
    return RenderedUrl(url=url, params=dict(parse_qsl(urlparse(url).query, keep_blank_values=True)))


def fire_postbacks(
    db: Session,
    *,
    commission_id: int,
    trigger_event: PostbackTriggerEnum,
    sender: DeliverySender | None = None,
    now: datetime | None = None,
) -> list[PostbackLog]:
    commission = get_commission(db, commission_id=commission_id)
    if commission is None or commission.affiliate is None:
        return []
    templates = list_active_templates(db, shop_id=commission.shop_id, trigger_event=trigger_event)
    if not templates:
        return []

    now = now or utcnow()
    affiliate = commission.affiliate
    attribution = commission.order_attribution
    click = attribution.click if attribution is not None else None
    params = build_postback_params(
        build_webhook_data_map(commission, attribution, click, affiliate, affiliate.offer)
    )

    logs = []
    for template in templates:
        rendered = render_postback_url(template, params)
        log = create_postback_log(
            db,
            shop_id=commission.shop_id,
            commission_id=commission.id,
            template_id=template.id,
            url=rendered.url,
            request_params=rendered.params,
        )
        result = attempt_delivery(db, log=log, url=rendered.url, kind=NOTIFICATION_KIND, sender=sender, now=now)
        if not result.success:
            logger.warning(
                "postback.failed",
                extra={
                    "shop_id": commission.shop_id,
                    "commission_id": commission.id,
                    "template_id": template.id,
                    "trigger_event": trigger_event.value,
                    "error": result.error,
                },
            )
        logs.append(log)
    return logs
