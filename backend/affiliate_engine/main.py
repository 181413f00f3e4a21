# This file bootstraps the FastAPI app: middlewares for logging and request
# context, CORS for the storefront click beacon, error handlers, and routers.

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import os
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from affiliate_engine.core.config import settings
from affiliate_engine.core.db import Base, engine
from affiliate_engine.core.errors import AffiliateEngineError
from affiliate_engine.core.logging import APILoggingMiddleware
from affiliate_engine.core.request_meta import RequestContextMiddleware

import affiliate_engine.models  # noqa: F401  registers tables on Base.metadata

from affiliate_engine.api.clicks import router as clicks_router
from affiliate_engine.api.webhooks import router as webhooks_router

# Create tables on startup unless migrations manage the schema.
if os.getenv("SKIP_MIGRATIONS") != "1":
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="Affiliate Engine")


@app.exception_handler(AffiliateEngineError)
def handle_engine_error(_request, exc: AffiliateEngineError):
    response = JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    response.headers["X-Error-Code"] = exc.code
    return response


app.add_middleware(APILoggingMiddleware)

for r in (clicks_router, webhooks_router):
    app.include_router(r)

# Attach request context (request_id, client_ip, user_agent) early.
app.add_middleware(RequestContextMiddleware)


# /metrics endpoint (Prometheus scraping)
@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/ping")
def ping():
    return {"message": "pong"}


# The click beacon is called from storefront pages on any shop domain.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
    max_age=86400,
)
