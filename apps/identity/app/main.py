import logging
import threading
import time

from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from ride_shared import RedisRateLimiter, SlidingWindowLimiter

from .config import settings
from .database import SessionLocal, engine
from .errors import (
    IdentityError,
    http_exception_handler,
    identity_error_handler,
    request_validation_handler,
    unhandled_error_handler,
)
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .otp_service import OtpService, build_otp_service
from .routers import auth as auth_router


logger = logging.getLogger("identity")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


def _start_sweeper(service: OtpService, interval: int) -> None:
    def _sweep_loop():
        while True:
            time.sleep(interval)
            try:
                service.purge_stale()
            except Exception:
                logger.exception("OTP sweep failed")

    threading.Thread(target=_sweep_loop, name="otp-sweeper", daemon=True).start()


def create_app(otp_service: OtpService | None = None) -> FastAPI:
    app = FastAPI(title="Identity API", version="0.1.0")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON logs
    app.add_middleware(RequestIDMiddleware)

    # Rate limit
    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
        )
    else:
        app.add_middleware(SlidingWindowLimiter, limit_per_minute=settings.RATE_LIMIT_PER_MINUTE)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    service = otp_service or build_otp_service(settings, SessionLocal)
    app.state.otp_service = service
    logger.info("OTP delivery via %s gateway", service.gateway.name)

    app.add_exception_handler(IdentityError, identity_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    if settings.OTP_SWEEP_POLL_SECS > 0:
        @app.on_event("startup")
        def _start_otp_sweeper():
            _start_sweeper(service, settings.OTP_SWEEP_POLL_SECS)

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQ.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(auth_router.router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)
