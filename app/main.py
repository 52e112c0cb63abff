import asyncio
import os
from datetime import timedelta

from fastapi import FastAPI

from app.config import settings
from app.database import Base, SessionLocal, engine
from app.logging_config import get_logger, setup_logging
from app.routers import telegram_webhook
from app.runtime import BotRuntime, close_runtime, get_runtime
from app.services.rate_limiter import cleanup_rate_limits
from app.services.state_service import purge_expired_states

setup_logging("DEBUG" if settings.debug else settings.log_level)

app = FastAPI(
    title="FoodShare Bot",
    description="Telegram bot for sharing surplus food",
    version="0.1.0",
)

app.include_router(telegram_webhook.router)

maintenance_logger = get_logger("maintenance_worker")
_maintenance_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_maintenance_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("MAINTENANCE_WORKER_ENABLED"), default=True)


def run_maintenance(runtime: BotRuntime) -> dict:
    """One sweep over everything that expires. Returns removed counts per store."""
    db = SessionLocal()
    try:
        rate_limits = cleanup_rate_limits(
            db,
            window_ms=settings.rate_limit_window_ms,
            min_age=timedelta(minutes=settings.rate_limit_cleanup_minutes),
        )
        states = purge_expired_states(db)
    finally:
        db.close()

    return {
        "rate_limits": rate_limits,
        "states": states,
        "cache_entries": runtime.cache.sweep(),
        "resend_windows": runtime.resend_limiter.cleanup(),
    }


async def _maintenance_worker_loop() -> None:
    interval_seconds = max(settings.maintenance_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = run_maintenance(get_runtime())
            if any(results.values()):
                maintenance_logger.info("Maintenance sweep finished", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            maintenance_logger.error(
                "Maintenance loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_maintenance_worker() -> None:
    global _maintenance_task
    if _is_env_enabled(os.environ.get("CREATE_TABLES"), default=False):
        Base.metadata.create_all(bind=engine)
    if not _is_maintenance_worker_enabled():
        return
    if _maintenance_task is None or _maintenance_task.done():
        _maintenance_task = asyncio.create_task(_maintenance_worker_loop())
        maintenance_logger.info("Maintenance worker started")


@app.on_event("shutdown")
async def stop_maintenance_worker() -> None:
    global _maintenance_task
    if _maintenance_task is not None:
        _maintenance_task.cancel()
        try:
            await _maintenance_task
        except asyncio.CancelledError:
            pass
        _maintenance_task = None
    await close_runtime()
