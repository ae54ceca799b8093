import logging
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from wallet_shared import Cooldown, DedupGate, OTPStore
from wallet_shared import email_provider, sms_provider

from .config import settings
from .database import engine
from .errors import install_error_handlers
from .metrics import metrics_middleware
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import accounts as accounts_router
from .routers import kyc as kyc_router
from .sweeps import start_sweeps, stop_sweeps
from .verification import VerificationComponents

logger = logging.getLogger("accounts.main")


def build_components() -> VerificationComponents:
    return VerificationComponents(
        sms_otp=OTPStore("sms", ttl_secs=settings.OTP_TTL_SECS, max_attempts=settings.OTP_MAX_ATTEMPTS),
        email_otp=OTPStore("email", ttl_secs=settings.OTP_TTL_SECS, max_attempts=settings.OTP_MAX_ATTEMPTS),
        sms_backend=sms_provider.resolve_backend(settings.OTP_SMS_PROVIDER),
        email_backend=email_provider.resolve_backend(settings.OTP_EMAIL_PROVIDER),
        dedup=DedupGate(default_ttl=settings.DEDUP_TTL_SECS),
        cooldown=Cooldown(seconds=settings.SEND_COOLDOWN_SECS),
        email_max_attempts=settings.EMAIL_MAX_ATTEMPTS,
    )


def create_app(components: Optional[VerificationComponents] = None) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, version="0.1.0", docs_url="/docs")
    app.state.components = components or build_components()
    app.state.sweep_tasks = []

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Request ID + JSON request log
    app.add_middleware(RequestIDMiddleware)
    app.middleware("http")(metrics_middleware)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    @app.get("/")
    def root():
        return {"service": settings.APP_NAME, "env": settings.ENV, "api": settings.API_PREFIX}

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        c = app.state.components
        return {
            "status": "ok",
            "env": settings.ENV,
            "otp": {"sms": c.sms_otp.stats(), "email": c.email_otp.stats()},
            "dedup_in_flight": len(c.dedup),
        }

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(accounts_router.router)
    app.include_router(kyc_router.router)

    install_error_handlers(app)

    @app.on_event("startup")
    async def _start_sweepers():
        app.state.sweep_tasks = start_sweeps(
            app.state.components,
            otp_interval=settings.OTP_CLEANUP_INTERVAL_SECS,
            dedup_interval=settings.DEDUP_CLEANUP_INTERVAL_SECS,
        )
        logger.info("sweepers started otp=%ss dedup=%ss", settings.OTP_CLEANUP_INTERVAL_SECS, settings.DEDUP_CLEANUP_INTERVAL_SECS)

    @app.on_event("shutdown")
    async def _stop_sweepers():
        await stop_sweeps(app.state.sweep_tasks)
        app.state.sweep_tasks = []

    return app


app = create_app()
