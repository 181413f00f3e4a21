from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, validator


POSTBACK_PARAM_KEYS = ("transaction_id", "affiliate_id", "sub1", "sub2", "sub3", "sub4")


class TrackClickRequest(BaseModel):
    ref: Optional[str] = None
    shop: Optional[str] = None
    landing_url: Optional[str] = None
    referrer: Optional[str] = None
    timestamp: Optional[Any] = None
    url_params: Optional[dict[str, Any]] = None
    user_agent_hint: Optional[str] = None
    transaction_id: Optional[str] = None
    affiliate_id: Optional[str] = None
    sub1: Optional[str] = None
    sub2: Optional[str] = None
    sub3: Optional[str] = None
    sub4: Optional[str] = None

    @validator(
        "ref",
        "transaction_id",
        "affiliate_id",
        "sub1",
        "sub2",
        "sub3",
        "sub4",
        pre=True,
    )
    def coerce_scalar(cls, value):
        # Storefront scripts send numbers as often as strings.
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @validator("url_params", pre=True)
    def drop_non_mapping_params(cls, value):
        if not isinstance(value, dict):
            return None
        return value

    def stored_url_params(self) -> dict[str, str]:
        """Non-empty string URL params, as persisted on the click."""
        if not self.url_params:
            return {}
        return {
            str(key): value
            for key, value in self.url_params.items()
            if isinstance(value, str) and value != ""
        }

    def postback_params(self) -> dict[str, Optional[str]]:
        """url_params take precedence over the top-level fields."""
        raw = self.url_params or {}
        params: dict[str, Optional[str]] = {}
        for key in POSTBACK_PARAM_KEYS:
            value = raw.get(key)
            if value is None:
                value = getattr(self, key)
            params[key] = str(value) if value not in (None, "") else None
        return params


class TrackClickResponse(BaseModel):
    success: bool = True
    clickId: str
    affiliateId: int
    affiliateNumber: int
    deduplicated: bool = False
