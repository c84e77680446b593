# app/api/v1/endpoints/ping.py
from fastapi import APIRouter

from app.core.config import settings

router = APIRouter()

@router.get("/", summary="Ping service")
async def ping():
    # 不需登入，也會經過 IP 封鎖與攻擊樣式掃描
    return {"message": "pong", "app": settings.APP_NAME}
