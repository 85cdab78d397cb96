"""FastAPI application."""
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from api.routes import auth, gifts, webhooks
from api.dependencies import get_telegram_client
from api.context import request_id_var, ip_address_var, user_agent_var
from api.services.settlement_engine import MarketError
from config.settings import CORS_ORIGINS, ENVIRONMENT, STORAGE_BACKEND, TELEGRAM_BOT_TOKEN, WEBAPP_PATH

# Configure Structured Logging
class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_obj = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        request_id = getattr(record, "request_id", None) or request_id_var.get()
        if request_id:
            log_obj["request_id"] = request_id
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, ensure_ascii=False)

handler = logging.StreamHandler()
handler.setFormatter(JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[handler])
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if not TELEGRAM_BOT_TOKEN:
        logger.warning("TELEGRAM_BOT_TOKEN not set, invoices and notifications will fail")

    if STORAGE_BACKEND == "memory":
        logger.warning("Using in-memory storage, data is lost on restart")
    else:
        from api.db.base import init_models
        await init_models()
        logger.info("PostgreSQL schema ready")

    yield

    # Shutdown
    await get_telegram_client().close()
    logger.info("Application shutting down")


app = FastAPI(
    title="Gift Market API",
    description="Backend for the Telegram gift marketplace",
    version="0.1.0",
    lifespan=lifespan,
)


def _error_response(code: str, message: str, status_code: int) -> Response:
    return Response(
        content=json.dumps({
            "error": {
                "code": code,
                "message": message,
                "request_id": request_id_var.get()
            }
        }),
        status_code=status_code,
        media_type="application/json"
    )

# Standardized Error Handlers
@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc}")
    return _error_response(exc.code, str(exc), exc.status_code)

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error_response("VALIDATION_ERROR", str(exc), 400)

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global error: {exc}", exc_info=exc)
    return _error_response("INTERNAL_ERROR", "An unexpected error occurred", 500)

# Request Trace Middleware
class RequestTraceMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        token_rid = request_id_var.set(request_id)
        token_ip = ip_address_var.set(request.client.host if request.client else None)
        token_ua = user_agent_var.set(request.headers.get("user-agent"))

        logger.info(f"Incoming {request.method} {request.url.path}")

        try:
            response: Response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token_rid)
            ip_address_var.reset(token_ip)
            user_agent_var.reset(token_ua)

app.add_middleware(RequestTraceMiddleware)

# CORS middleware - configure allowed origins from environment
ALLOWED_ORIGINS = [o for o in CORS_ORIGINS.split(",") if o]
if ENVIRONMENT == "development":
    ALLOWED_ORIGINS = ["*"]  # Allow all in development

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=ENVIRONMENT != "development",
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"]
)

app.include_router(auth.router)
app.include_router(gifts.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"ok": True}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Static webapp last so API routes take precedence
if os.path.isdir(WEBAPP_PATH):
    app.mount("/", StaticFiles(directory=WEBAPP_PATH, html=True), name="webapp")
else:
    logger.warning(f"Webapp directory not found at: {WEBAPP_PATH}")
