# app/services/scheduler.py
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from fastapi import FastAPI

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.services.registry import close_security_services, get_security_services
from app.services.ttl_store import StoreUnavailableError

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None

@asynccontextmanager
async def lifespan_scheduler(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan：啟動 / 關閉 APScheduler，結束時關閉 TTL store 連線。
    需接受 app 參數（FastAPI 會注入），否則會出現 TypeError。
    """
    global scheduler
    if settings.SECURITY_SWEEP_ENABLED:
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            run_security_sweep,
            IntervalTrigger(minutes=settings.SECURITY_SWEEP_INTERVAL_MINUTES),
        )
        scheduler.start()
        logger.info(
            "APScheduler started: security sweep every %s minutes",
            settings.SECURITY_SWEEP_INTERVAL_MINUTES,
        )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
            logger.info("APScheduler shutdown")
        await close_security_services()

async def run_security_sweep() -> Optional[int]:
    """排程作業：看最近的安全事件數量，超過門檻就發警告。回傳事件數（store 不可用時 None）"""
    logger.info("Performing security sweep...")
    audit = get_security_services().audit
    try:
        count = await audit.recent_event_count()
    except StoreUnavailableError as e:
        logger.warning("Security sweep skipped, store unavailable: %s", e)
        return None

    if count > settings.SECURITY_SWEEP_ALERT_THRESHOLD:
        logger.warning("High number of security events detected: %s", count)
    logger.info("Security sweep completed (%s recent events)", count)
    return count
