import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import sessionmaker

from access_log import AccessLogBuffer, AccessLogStore
from background import BackgroundTaskQueue
from config import Settings, settings as default_settings
from db import SessionLocal, init_db, make_engine, make_session_factory
from errors import GatewayError
from key_store import ApiKeyStore
from middleware import AccessControlMiddleware
from redis_client import redis_client
from routes import router
from schemas import ApiKeyPurpose, CreateApiKeyRequest, CreateApiKeyResponse
from security import API_KEY_ADMIN_PATH
from timing import utcnow


logging.basicConfig(level=default_settings.LOG_LEVEL)
logger = logging.getLogger("gateway")


API_KEY_CREATED_MESSAGE = "API Key created successfully. Store it securely, it will not be shown again."


# ======================================================
# Lifecycle
# ======================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state

    if state.settings.CREATE_TABLES_ON_STARTUP:
        init_db(state.session_factory.kw["bind"])

    state.tasks.start()
    state.access_logs.start()
    logger.info("Gateway started")

    try:
        yield
    finally:
        logger.info("Shutting down gracefully...")
        await state.tasks.stop(timeout=state.settings.SHUTDOWN_DRAIN_TIMEOUT)
        await state.access_logs.stop()
        for role_engine in state.role_engines:
            role_engine.dispose()
        logger.info("Gateway shut down")


# ======================================================
# Error handlers
# ======================================================

async def gateway_error_handler(request: Request, exc: GatewayError):
    return exc.to_response()


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Request Validation Error",
            "message": "Request doesn't match the schema",
            "details": {
                "issues": jsonable_encoder(exc.errors()),
                "method": request.method,
                "url": str(request.url),
            },
        },
    )


# ======================================================
# Public routes
# ======================================================

async def health_check():
    return PlainTextResponse("OK")


async def create_api_key(request: Request, body: CreateApiKeyRequest):
    """
    Public from loopback. Anywhere else the middleware has already required a valid key.
    """
    client_ip = request.client.host if request.client else "unknown"

    record = await request.app.state.key_store.create(
        purpose=body.purpose,
        data_classification=body.data_classification,
        description=body.description,
        allowed_ips=[str(ip) for ip in body.allowed_ips or []],
        created_by=client_ip,
        now=utcnow(),
    )

    return CreateApiKeyResponse(apiKey=record.key, message=API_KEY_CREATED_MESSAGE)


# ======================================================
# App Setup
# ======================================================

def create_app(
    *,
    app_settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    session_factories: Optional[Dict[ApiKeyPurpose, sessionmaker]] = None,
    redis=None,
) -> FastAPI:
    """
    session_factory serves api keys and access logs. session_factories
    overrides the per-purpose factories used by the resource routes; a purpose
    with neither an override nor its own URL shares session_factory.
    """
    app_settings = app_settings or default_settings
    session_factory = session_factory or SessionLocal
    session_factories = dict(session_factories or {})

    role_urls = {
        ApiKeyPurpose.MARKETING: app_settings.MARKETING_DATABASE_URL,
        ApiKeyPurpose.AUDIT: app_settings.AUDITOR_DATABASE_URL,
        ApiKeyPurpose.SYSTEM: app_settings.DATA_STEWARD_DATABASE_URL,
    }
    role_engines = []
    for purpose, url in role_urls.items():
        if purpose in session_factories:
            continue
        if url:
            role_engine = make_engine(url)
            role_engines.append(role_engine)
            session_factories[purpose] = make_session_factory(role_engine)
        else:
            session_factories[purpose] = session_factory

    app = FastAPI(title="Data Access Gateway", lifespan=lifespan)

    key_store = ApiKeyStore(session_factory)
    access_logs = AccessLogBuffer(
        AccessLogStore(session_factory),
        flush_interval=app_settings.ACCESS_LOG_FLUSH_INTERVAL_MS / 1000,
        max_buffer_size=app_settings.ACCESS_LOG_MAX_BUFFER_SIZE,
    )
    tasks = BackgroundTaskQueue(max_size=app_settings.BACKGROUND_QUEUE_MAX_SIZE)

    app.state.settings = app_settings
    app.state.session_factory = session_factory
    app.state.session_factories = session_factories
    app.state.role_engines = role_engines
    app.state.redis = redis if redis is not None else redis_client
    app.state.key_store = key_store
    app.state.access_logs = access_logs
    app.state.tasks = tasks

    app.add_middleware(
        AccessControlMiddleware,
        key_store=key_store,
        access_logs=access_logs,
        tasks=tasks,
        enforce_allowed_ips=app_settings.ENFORCE_ALLOWED_IPS,
    )
    # Added last so it runs first: CORS preflight never needs a key
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ALLOWED_ORIGINS,
        allow_headers=["Content-Type", "X-API-Key"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    )

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.add_api_route("/", health_check, methods=["GET"], response_class=PlainTextResponse)
    app.add_api_route(
        API_KEY_ADMIN_PATH,
        create_api_key,
        methods=["POST"],
        status_code=status.HTTP_201_CREATED,
        response_model=CreateApiKeyResponse,
    )
    app.include_router(router)

    return app


app = create_app()
