# app/main.py
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.errors import register_error_handlers
from app.api.v1.router import api_router
from app.middleware.auth import AuthMiddleware
from app.services.registry import get_security_services
from app.services.scheduler import lifespan_scheduler  # lifespan（排程）
from app.services.ttl_store import StoreUnavailableError

# Monitoring
import sentry_sdk
from prometheus_fastapi_instrumentator import Instrumentator

logger = setup_logging()
log = logging.getLogger(__name__)


def _validate_secrets() -> None:
    """
    部署前安全檢查：在 prod/staging/preview 等環境時，不允許使用短或空的金鑰。
    """
    env = (settings.ENV or "").lower()
    if env in {"prod", "production", "staging", "preview"}:
        if not settings.SECRET_KEY or len(settings.SECRET_KEY) < 32:
            raise RuntimeError(
                f"Insecure config for SECRET_KEY in ENV={settings.ENV}. "
                "Please set a strong key via environment variables."
            )


def create_app() -> FastAPI:
    # 基本安全檢查
    _validate_secrets()

    # 啟用 lifespan（內含 APScheduler：安全事件巡檢）
    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        lifespan=lifespan_scheduler,
    )

    # IP 封鎖 / 攻擊掃描 / token 驗證（在 CORS 之內）
    app.add_middleware(AuthMiddleware)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---- Sentry 初始化（若 SENTRY_DSN 未設定就略過）----
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            traces_sample_rate=0.1,
            environment=settings.SENTRY_ENV,
        )

    # ---- Prometheus /metrics ----
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    # 統一錯誤處理
    register_error_handlers(app)

    # === API 路由 ===
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # 健康檢查（root & ops）
    @app.get("/", summary="Root")
    async def root():
        return {"app": settings.APP_NAME, "env": settings.ENV}

    @app.get("/healthz", tags=["ops"])
    async def healthz():
        return {"ok": True}

    @app.get("/readyz", tags=["ops"])
    async def readyz():
        try:
            await get_security_services().store.ping()
        except StoreUnavailableError:
            return JSONResponse(status_code=503, content={"ready": False, "store": "unavailable"})
        return {"ready": True}

    log.info("Application initialized (env=%s, store=%s)", settings.ENV, settings.STORE_BACKEND)
    return app


# Uvicorn 進入點
app = create_app()
