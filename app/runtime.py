"""Process-wide components shared by every request.

The cache, breaker and in-process limiter hold state that must outlive a
single update, so they are built once and handed to routes as a FastAPI
dependency.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import Settings, settings
from app.logging_config import get_logger
from app.services.cache import EphemeralCache
from app.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.services.file_transfer_service import FileTransferService
from app.services.flow_service import FlowService
from app.services.geocoding_service import GeocodingService
from app.services.rate_limiter import InProcessRateLimiter
from app.services.storage_service import StorageService
from app.services.telegram_service import TelegramService

logger = get_logger("runtime")

RESEND_MAX_REQUESTS = 3
RESEND_WINDOW_SECONDS = 3600


@dataclass
class BotRuntime:
    config: Settings
    http_client: httpx.AsyncClient
    cache: EphemeralCache
    breaker: CircuitBreaker
    resend_limiter: InProcessRateLimiter
    telegram: TelegramService
    storage: StorageService
    file_transfer: FileTransferService
    flows: FlowService

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_runtime(config: Settings = settings, http_client: Optional[httpx.AsyncClient] = None) -> BotRuntime:
    # One connection pool for the Bot API, storage and geocoding.
    http_client = http_client or httpx.AsyncClient()
    cache = EphemeralCache()
    breaker = CircuitBreaker()
    resend_limiter = InProcessRateLimiter(max_requests=RESEND_MAX_REQUESTS, window_seconds=RESEND_WINDOW_SECONDS)

    breaker_config = CircuitBreakerConfig(
        failure_threshold=config.circuit_failure_threshold,
        reset_timeout=config.circuit_reset_timeout_seconds,
    )

    telegram = TelegramService(
        config.telegram_bot_token,
        breaker,
        base_url=config.telegram_api_base_url,
        breaker_config=breaker_config,
        timeout=config.telegram_request_timeout_seconds,
        webhook_secret=config.telegram_webhook_secret or None,
        http_client=http_client,
    )
    storage = StorageService(
        config.supabase_url,
        config.supabase_service_role_key,
        config.storage_bucket,
        http_client=http_client,
    )
    file_transfer = FileTransferService(
        telegram,
        storage,
        max_attempts=config.file_transfer_attempts,
        backoff_seconds=config.file_transfer_backoff_seconds,
        max_file_size=config.file_max_size_bytes,
        upload_attempts=config.file_upload_attempts,
        upload_retry_delay=config.file_upload_retry_delay_seconds,
    )
    geocoder = GeocodingService(
        breaker,
        base_url=config.geocoding_url,
        timeout=config.geocoding_timeout_seconds,
        breaker_config=breaker_config,
        cache=cache,
        http_client=http_client,
    )
    flows = FlowService(
        telegram, file_transfer, storage, cache, resend_limiter, geocoder, app_url=config.app_url
    )

    if not config.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN is not set, outgoing messages will fail")

    return BotRuntime(
        config=config,
        http_client=http_client,
        cache=cache,
        breaker=breaker,
        resend_limiter=resend_limiter,
        telegram=telegram,
        storage=storage,
        file_transfer=file_transfer,
        flows=flows,
    )


_runtime: Optional[BotRuntime] = None


def get_runtime() -> BotRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


async def close_runtime() -> None:
    global _runtime
    if _runtime is None:
        return
    await _runtime.aclose()
    _runtime = None
