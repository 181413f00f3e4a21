from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class AffiliateEngineError(Exception):
    code: str
    message: str
    status_code: int

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ClickRejected(AffiliateEngineError):
    """Raised by the click beacon when a click must not be recorded."""

    def __init__(self, message: str, *, code: str, status_code: int = 400):
        super().__init__(code=code, message=message, status_code=status_code)


class WebhookVerificationError(AffiliateEngineError):
    def __init__(self, message: str = "Invalid webhook signature", *, code: str = "invalid_hmac", status_code: int = 401):
        super().__init__(code=code, message=message, status_code=status_code)


class WebhookPayloadError(AffiliateEngineError):
    def __init__(self, message: str, *, code: str = "invalid_payload"):
        super().__init__(code=code, message=message, status_code=400)


class WebhookConfigurationError(AffiliateEngineError):
    def __init__(self, message: str = "Webhook secret not configured"):
        super().__init__(code="webhook_secret_missing", message=message, status_code=500)


class InvalidCommissionTransition(ValueError):
    def __init__(self, commission_id: int, current: str, target: str):
        self.commission_id = commission_id
        self.current = current
        self.target = target
        super().__init__(f"commission {commission_id} cannot move from {current} to {target}")


class CommissionBlockedByFraud(ValueError):
    def __init__(self, commission_id: int, flag_ids: list[int]):
        self.commission_id = commission_id
        self.flag_ids = flag_ids
        super().__init__(f"commission {commission_id} has unresolved fraud flags: {flag_ids}")
