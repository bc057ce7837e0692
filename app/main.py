from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.core.config import settings
from app.core.errors import CRMError
from app.core.observability import (
    domain_exception_handler,
    http_exception_handler,
    log_event,
    logger,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from app.db.session import SessionLocal, create_all, engine
from app.routers import campaigns, customers, orders, segments
from app.services.runtime import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own session factory before startup.
    session_factory = getattr(app.state, "session_factory", None) or SessionLocal
    app.state.session_factory = session_factory
    if settings.db_create_all:
        await create_all(session_factory.kw.get("bind") or engine)

    runtime = build_runtime(session_factory)
    app.state.runtime = runtime
    await runtime.start()
    log_event(logger, "startup", env=settings.env, channels=runtime.bus.channels)
    try:
        yield
    finally:
        await runtime.stop()
        log_event(logger, "shutdown")


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Audience segmentation and campaign dispatch API.\n\n"
        "Swagger quick test flow:\n"
        "1. Obtain an access token from the auth service and click **Authorize**.\n"
        "2. Build a rule tree with `POST /segments/preview`, then save it with `POST /segments`.\n"
        "3. Create a campaign for the segment and start it with `POST /campaigns/{id}/send`.\n"
        "4. Poll `GET /campaigns/{id}` and `GET /campaigns/{id}/logs` for delivery progress."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "customers", "description": "Customer profiles; writes are queued through the event bus."},
        {"name": "orders", "description": "Orders and their effect on customer spend and activity."},
        {"name": "segments", "description": "Rule-tree segments, live previews, and text-to-rule generation."},
        {"name": "campaigns", "description": "Campaigns, send dispatch, delivery logs, and vendor receipts."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(CRMError, domain_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:5173"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(customers.router)
app.include_router(orders.router)
app.include_router(segments.router)
app.include_router(campaigns.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
