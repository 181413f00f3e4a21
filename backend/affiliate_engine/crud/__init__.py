from .affiliates import (
    create_offer,
    get_offer,
    create_affiliate,
    get_affiliate,
    get_affiliate_by_number,
    find_affiliate_by_email,
    update_affiliate,
    store_postback_params,
    create_link,
    find_link_by_coupon,
)
from .clicks import get_click
from .attributions import get_attribution_by_order, upsert_order_attribution
from .commissions import get_commission, get_active_commission_for_order
from .fraud_flags import create_fraud_flag, list_flags_for_commission
from .webhook_logs import create_postback_template, list_active_templates
