from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from affiliate_engine.core.clicks import track_click
from affiliate_engine.core.db import get_db
from affiliate_engine.schemas.clicks import POSTBACK_PARAM_KEYS, TrackClickRequest, TrackClickResponse


router = APIRouter(tags=["clicks"])
logger = logging.getLogger(__name__)

_RESERVED_QUERY_KEYS = {"ref", "shop"}


def _request_user_agent(request: Request) -> str | None:
    return getattr(request.state, "user_agent", None) or request.headers.get("User-Agent")


def _client_ip(request: Request) -> str | None:
    return getattr(request.state, "client_ip", None) or (request.client.host if request.client else None)


def _track(db: Session, request: Request, payload: TrackClickRequest) -> TrackClickResponse:
    tracked = track_click(
        db,
        payload=payload,
        client_ip=_client_ip(request),
        user_agent=_request_user_agent(request),
    )
    return TrackClickResponse(
        success=True,
        clickId=tracked.click_id,
        affiliateId=tracked.affiliate_id,
        affiliateNumber=tracked.affiliate_number,
        deduplicated=tracked.deduplicated,
    )


@router.post("/track", response_model=TrackClickResponse)
def track_click_beacon(
    payload: TrackClickRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    return _track(db, request, payload)


@router.get("/track", response_model=TrackClickResponse)
def track_click_pixel(request: Request, db: Session = Depends(get_db)):
    """Query-string variant of the beacon for links and image pixels."""
    query = request.query_params
    url_params = {key: value for key, value in query.items() if key not in _RESERVED_QUERY_KEYS}
    referer = request.headers.get("Referer")
    payload = TrackClickRequest(
        ref=query.get("ref"),
        shop=query.get("shop"),
        landing_url=query.get("url") or referer or "/",
        referrer=referer or "",
        user_agent_hint=(request.headers.get("User-Agent") or "")[:100],
        url_params=url_params or None,
        **{key: query.get(key) or None for key in POSTBACK_PARAM_KEYS},
    )
    return _track(db, request, payload)
