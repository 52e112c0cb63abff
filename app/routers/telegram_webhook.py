import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import LoggerAdapter, get_logger
from app.runtime import BotRuntime, get_runtime
from app.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from app.services.errors import StorageError
from app.services.rate_limiter import check_rate_limit

logger = get_logger("telegram_webhook")

router = APIRouter()

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
GENERIC_ERROR_TEXT = "⚠️ Something went wrong. Please try again in a moment."


def verify_secret(request: Request, expected: str) -> bool:
    """Constant-time check of the secret Telegram echoes on every delivery."""
    if not expected:
        logger.warning("Webhook secret is not configured, accepting unauthenticated update")
        return True
    received = request.headers.get(SECRET_HEADER, "")
    return hmac.compare_digest(received.encode(), expected.encode())


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            body = json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue
        if isinstance(body, dict):
            return body

    logger.error("Failed to decode Telegram webhook payload")
    return None


@router.post("/telegram-webhook", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    db: Session = Depends(get_db),
    runtime: BotRuntime = Depends(get_runtime),
):
    """
    Handle one Telegram update:
    - Reject deliveries without the shared secret
    - Drop updates from users over the rate limit (no reply)
    - Dispatch everything else to the conversation flows
    """
    if not verify_secret(request, runtime.config.telegram_webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid secret token")

    body = await parse_telegram_update(request)
    if body is None:
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    try:
        update = TelegramUpdate.model_validate(body)
    except PydanticValidationError as e:
        logger.warning(f"Unrecognised update shape: {e.error_count()} errors")
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    sender = update.sender
    if sender is None:
        return TelegramWebhookResponse(success=True, message="No actionable content")

    log = LoggerAdapter(logger, {"update_id": update.update_id, "user_id": sender.id})

    try:
        limit = check_rate_limit(
            db,
            sender.id,
            max_requests=runtime.config.rate_limit_max_requests,
            window_ms=runtime.config.rate_limit_window_ms,
        )
    except StorageError as e:
        log.error("Rate limit write failed, processing update anyway", context={"error": str(e)})
    else:
        if not limit.allowed:
            log.info("Rate limited", context={"retry_after_seconds": limit.retry_after_seconds})
            return TelegramWebhookResponse(success=True, message="Rate limited")

    try:
        outcome = await runtime.flows.handle_update(db, update)
    except StorageError as e:
        log.error(f"State store write failed: {e}")
        chat_id = _reply_chat_id(update)
        if chat_id is not None:
            await runtime.telegram.send_message(chat_id, GENERIC_ERROR_TEXT)
        return TelegramWebhookResponse(success=False, message="Storage error")
    except Exception as e:
        log.error(f"Telegram webhook error: {e}", exc_info=True)
        return TelegramWebhookResponse(success=False, message="Internal error")

    log.info("Update handled", context={"outcome": outcome})
    return TelegramWebhookResponse(success=True, message=outcome)


def _reply_chat_id(update: TelegramUpdate) -> Optional[int]:
    if update.message:
        return update.message.chat.id
    if update.callback_query and update.callback_query.message:
        return update.callback_query.message.chat.id
    return None


@router.post("/setup-webhook", response_model=TelegramWebhookResponse)
async def setup_webhook(url: str = Query(..., min_length=1), runtime: BotRuntime = Depends(get_runtime)):
    """Register ``url`` with Telegram, including the shared secret."""
    if not url.startswith("https://"):
        raise HTTPException(status_code=400, detail="Webhook URL must use https")

    ok = await runtime.telegram.set_webhook(url)
    if not ok:
        return TelegramWebhookResponse(success=False, message="setWebhook failed")
    logger.info(f"Webhook registered: {url}")
    return TelegramWebhookResponse(success=True, message="Webhook registered")


@router.get("/health")
async def health(runtime: BotRuntime = Depends(get_runtime)):
    return {
        "status": "ok",
        "circuits": runtime.breaker.stats(),
        "cache": runtime.cache.stats(),
    }
