# backend/marketplace/main.py

import asyncio
import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from .api import api_bid, api_booking, api_change_requests
from .core.config import settings
from .core.observability import setup_logging, setup_tracer
from .database import engine
from .models.base import BaseModel
from .realtime.bus import close_redis_client
from .services.expiry_scheduler import expire_bids_loop
from .utils.errors import MarketplaceError
from .utils.status_logger import register_status_listeners

setup_logging()
logger = logging.getLogger(__name__)

register_status_listeners()

app = FastAPI(title="HomeFix Bidding API", default_response_class=ORJSONResponse)
setup_tracer(app)

_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return validation errors in the shared ``{message, field_errors}`` shape."""
    errors = exc.errors()
    logger.warning("Validation error at %s: %s", request.url.path, errors)
    field_errors = {
        ".".join(str(p) for p in err.get("loc", ()) if p != "body"): err.get("msg", "invalid")
        for err in errors
    }
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": {"message": "Validation error", "field_errors": field_errors}},
    )


@app.exception_handler(MarketplaceError)
async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
    """Catch domain errors that escape a route without being converted."""
    http_exc = exc.to_http()
    return ORJSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


app.include_router(api_booking.router, prefix=settings.API_V1_STR)
app.include_router(api_bid.router, prefix=settings.API_V1_STR)
app.include_router(api_change_requests.router, prefix=settings.API_V1_STR)


@app.on_event("startup")
def create_tables() -> None:
    BaseModel.metadata.create_all(bind=engine)


@app.on_event("startup")
def check_payment_gateway_url() -> None:
    """Log a warning when PAYMENT_GATEWAY_URL uses the default placeholder."""
    if settings.PAYMENT_GATEWAY_URL == "https://example.com":
        logger.warning(
            "PAYMENT_GATEWAY_URL is set to the default placeholder; update .env to your gateway URL"
        )


@app.on_event("startup")
async def start_background_tasks() -> None:
    """Launch the bid expiry sweep."""
    if os.getenv("DISABLE_EXPIRY_SWEEP") in {"1", "true", "yes"}:
        return
    asyncio.create_task(expire_bids_loop())


@app.on_event("shutdown")
def shutdown_redis_client() -> None:
    """Close Redis connections when the application shuts down."""
    logger.info("Closing Redis client")
    close_redis_client()


@app.get("/")
async def root():
    return {"message": "Welcome to the HomeFix Bidding API"}
