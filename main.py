"""
FastAPI Application Entry Point
Merch Storefront - checkout and fulfillment backend
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
import os
import asyncio
from dotenv import load_dotenv
from routes.admin_routes import router as admin_router
from starlette.middleware.base import BaseHTTPMiddleware
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable, Dict
from routers import (
    checkout,
    holder_status,
    inventory,
    session,
    webhooks,
)

from database import DATABASE_URL, init_db, check_db_health
from services.errors import ShopError
from services.feature_flags import feature_flags
from collections import defaultdict
from asyncio import Lock

# Load environment variables
load_dotenv()


# ---- Logging setup (JSON; good for Cloud Run) ----
class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Include traceback if present
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JsonFormatter())

root = logging.getLogger()
root.handlers = [handler]
root.setLevel(LOG_LEVEL)

# Optional: crank down noisy libs
logging.getLogger("uvicorn.access").setLevel(logging.INFO)
logging.getLogger("uvicorn.error").setLevel(logging.INFO)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # bump to INFO to see SQL
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("stripe").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Merch Storefront API",
    description="Tier-priced checkout and webhook fulfillment for collection merch",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

cors_origins_raw = os.getenv("CORS_ORIGINS", "http://localhost:3000")
cors_origins = [origin.strip() for origin in cors_origins_raw.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["http://localhost:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# ---- Request/Response logging middleware ----
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        start = time.time()

        # Attach request_id so handlers can use it
        request.state.request_id = request_id

        logger.info(
            f"REQ {request.method} {request.url.path} "
            f"qs={request.url.query!s} ip={request.client.host if request.client else '-'} "
            f"rid={request_id} ua={request.headers.get('user-agent','-')}"
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Uncaught exception in request pipeline rid={request_id}")
            raise

        dur_ms = int((time.time() - start) * 1000)
        logger.info(
            f"RES {request.method} {request.url.path} "
            f"status={response.status_code} durMs={dur_ms} rid={request_id}"
        )
        # Make request id visible to clients
        response.headers["X-Request-Id"] = request_id
        return response

app.add_middleware(RequestIDMiddleware)


# ---- Rate Limiting Middleware ----
class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Simple in-memory rate limiter.
    Limits requests per IP per time window.
    """
    def __init__(self, app, requests_per_minute: int = 60, burst_size: int = 100):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.burst_size = burst_size
        self.window_seconds = 60
        self._requests: Dict[str, list] = defaultdict(list)
        self._lock = Lock()
        self._last_sweep = 0.0
        # Health checks, docs and processor webhooks are never throttled
        self._exempt_paths = {
            "/healthz", "/api/health", "/", "/api/docs", "/api/redoc", "/api/openapi.json",
            "/api/stripe-webhook",
        }

    def _prune(self, current_time: float) -> None:
        """Drop IPs with no request inside the window, at most once per window."""
        if current_time - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = current_time
        for ip in list(self._requests):
            live = [t for t in self._requests[ip] if current_time - t < self.window_seconds]
            if live:
                self._requests[ip] = live
            else:
                del self._requests[ip]

    async def dispatch(self, request: Request, call_next: Callable):
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        current_time = time.time()

        async with self._lock:
            self._prune(current_time)
            # Clean old requests outside window
            self._requests[client_ip] = [
                t for t in self._requests[client_ip]
                if current_time - t < self.window_seconds
            ]

            if len(self._requests[client_ip]) >= self.requests_per_minute:
                logger.warning(f"Rate limit exceeded for IP: {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "Rate limit exceeded",
                        "retry_after_seconds": self.window_seconds,
                    },
                    headers={"Retry-After": str(self.window_seconds)},
                )

            # Check burst limit (too many in very short time)
            recent_requests = [t for t in self._requests[client_ip] if current_time - t < 1]
            if len(recent_requests) >= self.burst_size // 10:
                logger.warning(f"Burst limit exceeded for IP: {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "Too many requests in short time",
                        "retry_after_seconds": 1,
                    },
                    headers={"Retry-After": "1"},
                )

            self._requests[client_ip].append(current_time)

        response = await call_next(request)

        remaining = self.requests_per_minute - len(self._requests.get(client_ip, []))
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(int(current_time + self.window_seconds))

        return response


# Add rate limiting (configurable via env)
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_RPM = int(os.getenv("RATE_LIMIT_RPM", "120"))

if RATE_LIMIT_ENABLED:
    app.add_middleware(RateLimitMiddleware, requests_per_minute=RATE_LIMIT_RPM)
    logger.info(f"Rate limiting enabled: {RATE_LIMIT_RPM} requests/minute")


@app.get("/")
async def root():
    return {"ok": True, "service": "merch-storefront"}

@app.get("/healthz")
async def healthz():
    """Basic health check for load balancers."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Health check including database status and checkout availability."""
    db_health = await check_db_health()
    overall_status = "healthy" if db_health["status"] == "healthy" else "degraded"
    return {
        "status": overall_status,
        "database": db_health,
        "checkout_enabled": feature_flags.checkout_enabled(),
        "timestamp": time.time(),
    }


# --- Error handlers ---
@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} [{exc.code}] on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__} [{exc.code}] on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "code": "VALIDATION_ERROR", "detail": jsonable_errors(exc)},
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# --- Routers ---
app.include_router(checkout.router)
app.include_router(webhooks.router)
app.include_router(holder_status.router)
app.include_router(inventory.router)
app.include_router(session.router)
app.include_router(admin_router)

# --- Startup/shutdown ---
@app.on_event("startup")
async def startup():
    logger.info("Starting Merch Storefront API...")
    # The in-memory fallback database always needs its tables
    init_on_startup = os.getenv("INIT_DB_ON_STARTUP", "false").lower() == "true"
    if init_on_startup or DATABASE_URL.startswith("sqlite"):
        try:
            logger.info("Initializing database tables...")
            await asyncio.wait_for(init_db(), timeout=60)
            logger.info("Database initialized successfully")
        except asyncio.TimeoutError:
            logger.error("DB init timed out after 60s, continuing without init")
        except Exception as e:
            logger.error(f"DB init failed (continuing to serve): {e}", exc_info=True)
    else:
        logger.info("Skipping DB init on startup")
    await feature_flags.initialize_flags()

@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Merch Storefront API...")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production"
    )
