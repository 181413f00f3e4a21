from enum import Enum

# Stored as strings (native enums disabled for easier evolution).


class AffiliateStatusEnum(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class CommissionTypeEnum(str, Enum):
    FLAT_RATE = "flat_rate"
    PERCENTAGE = "percentage"


class SellingSubscriptionsEnum(str, Enum):
    # How rebills of subscription orders are commissioned.
    NO = "no"
    CREDIT_ALL = "credit_all"
    CREDIT_NONE = "credit_none"
    CREDIT_FIRST_ONLY = "credit_first_only"


class AttributionTypeEnum(str, Enum):
    LINK = "link"
    COUPON = "coupon"
    FINGERPRINT = "fingerprint"
    URL_PARAM = "url_param"


class CommissionStatusEnum(str, Enum):
    PENDING = "pending"
    ELIGIBLE = "eligible"
    APPROVED = "approved"
    PAID = "paid"
    REVERSED = "reversed"


class FraudFlagTypeEnum(str, Enum):
    SELF_REFERRAL = "self_referral"
    EXCESSIVE_CLICKS = "excessive_clicks"
    HIGH_REFUND_RATE = "high_refund_rate"


class DeliveryStatusEnum(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PostbackTriggerEnum(str, Enum):
    CONVERSION = "conversion"
    APPROVAL = "approval"
    PAYMENT = "payment"


class SequenceNameEnum(str, Enum):
    AFFILIATE_NUMBER = "affiliate_number"
    OFFER_NUMBER = "offer_number"
