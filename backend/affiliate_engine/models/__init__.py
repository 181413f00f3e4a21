from .affiliates import Offer, Affiliate, AffiliateLink
from .clicks import Click
from .attributions import OrderAttribution, SubscriptionAttribution
from .commissions import Commission
from .fraud_flags import FraudFlag
from .webhook_logs import AffiliateWebhookLog, PostbackTemplate, PostbackLog
from .sequences import ShopSequence
