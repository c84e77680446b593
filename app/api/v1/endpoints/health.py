# app/api/v1/endpoints/health.py
from fastapi import APIRouter, Depends

from app.core.config import settings
from app.core.deps import get_services
from app.services.registry import SecurityServices
from app.services.ttl_store import StoreUnavailableError

router = APIRouter()

@router.get("/", summary="Health check")
async def health_root(services: SecurityServices = Depends(get_services)):
    """服務本身 + TTL store 狀態；store 掛掉時 token 驗證會一律失敗"""
    try:
        store_ok = await services.store.ping()
    except StoreUnavailableError:
        store_ok = False
    return {
        "status": "ok" if store_ok else "degraded",
        "store": settings.STORE_BACKEND,
        "store_ok": store_ok,
    }
