"""
Bundle Labels API
FastAPI backend for bundle authoring, storefront labels and the cart discount function
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
import os
import asyncio
from dotenv import load_dotenv
from starlette.middleware.base import BaseHTTPMiddleware
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable, Dict
from routers import bundles, labels, storefront, cart_discount
from database import init_db, check_db_health, get_pool_status
from collections import defaultdict
from asyncio import Lock

# Load environment variables
load_dotenv()


# ---- Logging setup (JSON on stdout) ----
class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JsonFormatter())

root = logging.getLogger()
root.handlers = [handler]
root.setLevel(LOG_LEVEL)

logging.getLogger("uvicorn.access").setLevel(logging.INFO)
logging.getLogger("uvicorn.error").setLevel(logging.INFO)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # bump to INFO to see SQL

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Bundle Labels API",
    description="Product bundles with discount pricing and storefront badges",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# Admin API origins; the storefront endpoint sets its own open CORS headers
cors_origins_raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5000")
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


class StorefrontPreflightMiddleware(BaseHTTPMiddleware):
    """Answer storefront preflights from any origin before the admin CORS policy sees them."""

    def __init__(self, app, path_prefix: str = "/api/storefront/"):
        super().__init__(app)
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next: Callable):
        if (
            request.method == "OPTIONS"
            and request.url.path.startswith(self.path_prefix)
            and "access-control-request-method" in request.headers
        ):
            return Response(status_code=204, headers=storefront.STOREFRONT_CORS_HEADERS)
        return await call_next(request)

app.add_middleware(StorefrontPreflightMiddleware)


# ---- Request/Response logging middleware ----
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        start = time.time()

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
        self._exempt_paths = {"/healthz", "/api/health", "/", "/api/docs", "/api/redoc", "/api/openapi.json"}

    def _evict_idle(self, current_time: float) -> None:
        """Drop clients with no request inside the window."""
        idle = [
            ip for ip, stamps in self._requests.items()
            if not stamps or current_time - stamps[-1] >= self.window_seconds
        ]
        for ip in idle:
            del self._requests[ip]

    async def dispatch(self, request: Request, call_next: Callable):
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        current_time = time.time()

        async with self._lock:
            self._evict_idle(current_time)
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

            recent_requests = [t for t in self._requests[client_ip] if current_time - t < 1]
            if len(recent_requests) >= self.burst_size // 10:  # 10 requests per second max
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


RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_RPM = int(os.getenv("RATE_LIMIT_RPM", "600"))

if RATE_LIMIT_ENABLED:
    app.add_middleware(RateLimitMiddleware, requests_per_minute=RATE_LIMIT_RPM)
    logger.info(f"Rate limiting enabled: {RATE_LIMIT_RPM} requests/minute")


@app.get("/")
async def root():
    return {"ok": True, "service": "bundle-labels"}

@app.get("/healthz")
async def healthz():
    """Basic health check for load balancers."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Health check including database status."""
    db_health = await check_db_health()
    overall_status = "healthy" if db_health["status"] == "healthy" else "degraded"
    return {
        "status": overall_status,
        "database": db_health,
        "timestamp": time.time(),
    }


@app.get("/api/health/pool")
async def api_health_pool():
    pool_status = await get_pool_status()
    return {
        "pool": pool_status,
        "timestamp": time.time(),
    }


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "error": "Validation failed"})

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

# --- Routers ---
app.include_router(bundles.router, prefix="/api", tags=["bundles"])
app.include_router(labels.router, prefix="/api", tags=["labels"])
app.include_router(storefront.router, prefix="/api", tags=["storefront"])
app.include_router(cart_discount.router, prefix="/api", tags=["functions"])

# --- Startup/shutdown ---
@app.on_event("startup")
async def startup():
    logger.info("Starting Bundle Labels API...")
    if os.getenv("INIT_DB_ON_STARTUP", "true").lower() == "true":
        try:
            logger.info("Initializing database tables...")
            await asyncio.wait_for(init_db(), timeout=120)
            logger.info("Database initialized successfully")
        except asyncio.TimeoutError:
            logger.error("DB init timed out after 120s, continuing without init")
        except Exception as e:
            logger.error(f"DB init failed (continuing to serve): {e}", exc_info=True)
    else:
        logger.info("Skipping DB init on startup")

@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Bundle Labels API...")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production"
    )
