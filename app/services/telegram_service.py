from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.logging_config import get_logger
from app.services.circuit_breaker import (
    MESSAGING_API_RESOURCE,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
)
from app.services.errors import NetworkTimeout, UpstreamClientError, UpstreamServerError

logger = get_logger("telegram_service")

REQUEST_TIMEOUT_SECONDS = 10.0
FILE_INFO_TIMEOUT_SECONDS = 5.0
FILE_DOWNLOAD_TIMEOUT_SECONDS = 30.0


@dataclass
class TelegramFile:
    file_id: str
    file_path: str
    file_size: Optional[int] = None


def _error_description(response: httpx.Response) -> str:
    # Proxies and gateways answer 4xx with HTML
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or str(response.status_code)
    if isinstance(body, dict) and body.get("description"):
        return str(body["description"])
    return str(response.status_code)


class TelegramService:
    """The only way out to the Bot API.

    Send operations go through the circuit breaker and report a plain bool;
    they never raise. ``get_file`` and ``download_file`` are the raw file
    transport for the transfer pipeline and raise typed errors instead.
    """

    def __init__(
        self,
        bot_token: str,
        breaker: CircuitBreaker,
        *,
        base_url: str = "https://api.telegram.org",
        breaker_config: CircuitBreakerConfig = CircuitBreakerConfig(),
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        webhook_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.bot_token = bot_token
        self.breaker = breaker
        self.breaker_config = breaker_config
        self.timeout = timeout
        self.webhook_secret = webhook_secret
        self.api_url = f"{base_url.rstrip('/')}/bot{bot_token}"
        self.file_url = f"{base_url.rstrip('/')}/file/bot{bot_token}"
        self._client = http_client or httpx.AsyncClient()

    async def _call(self, method: str, data: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        """POST to the Bot API and return ``result``. Raises typed errors."""
        url = f"{self.api_url}/{method}"
        try:
            response = await self._client.post(url, json=data or {}, timeout=timeout or self.timeout)
        except httpx.TimeoutException as e:
            raise NetworkTimeout(f"Telegram {method} timed out") from e
        except httpx.TransportError as e:
            raise UpstreamServerError(f"Telegram {method} transport error: {e}") from e

        if response.status_code >= 500:
            raise UpstreamServerError(
                f"Telegram {method} failed with {response.status_code}", status_code=response.status_code
            )

        if response.status_code >= 400:
            raise UpstreamClientError(
                f"Telegram {method} rejected: {_error_description(response)}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamServerError(f"Telegram {method} returned invalid JSON", response.status_code) from e
        if not isinstance(body, dict):
            raise UpstreamServerError(f"Telegram {method} returned unexpected payload", response.status_code)

        if not body.get("ok"):
            raise UpstreamClientError(
                f"Telegram {method} rejected: {body.get('description', response.status_code)}",
                status_code=response.status_code,
            )
        return body.get("result")

    async def _make_request(self, method: str, data: Optional[dict] = None) -> bool:
        """Send through the breaker. False means "not delivered", never an exception."""
        try:
            await self.breaker.execute(
                MESSAGING_API_RESOURCE,
                lambda: self._call(method, data),
                self.breaker_config,
            )
            return True
        except CircuitOpenError as e:
            logger.warning(f"Telegram {method} skipped: {e}")
            return False
        except Exception as e:
            logger.error(
                f"Telegram API error: {e}",
                extra={"context": {"method": method, "error_type": type(e).__name__}},
            )
            return False

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: str = "HTML",
    ) -> bool:
        """Send message to Telegram chat."""
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        if reply_markup:
            data["reply_markup"] = reply_markup

        return await self._make_request("sendMessage", data)

    async def send_photo(
        self,
        chat_id: int,
        photo: str,
        caption: Optional[str] = None,
        reply_markup: Optional[dict] = None,
        parse_mode: str = "HTML",
    ) -> bool:
        """Send photo by Telegram file_id or public URL."""
        data = {"chat_id": chat_id, "photo": photo}
        if caption:
            data["caption"] = caption
            data["parse_mode"] = parse_mode
        if reply_markup:
            data["reply_markup"] = reply_markup

        return await self._make_request("sendPhoto", data)

    async def send_location(self, chat_id: int, latitude: float, longitude: float) -> bool:
        data = {"chat_id": chat_id, "latitude": latitude, "longitude": longitude}
        return await self._make_request("sendLocation", data)

    async def answer_callback(self, callback_query_id: str, text: Optional[str] = None) -> bool:
        data = {"callback_query_id": callback_query_id}
        if text:
            data["text"] = text
        return await self._make_request("answerCallbackQuery", data)

    async def set_webhook(self, url: str) -> bool:
        """Register the webhook. Telegram echoes the secret on every delivery."""
        data = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if self.webhook_secret:
            data["secret_token"] = self.webhook_secret
        else:
            logger.warning("Registering webhook without a secret token")
        return await self._make_request("setWebhook", data)

    async def get_file(self, file_id: str) -> TelegramFile:
        """Resolve a file_id to its download path and size."""
        result = await self._call("getFile", {"file_id": file_id}, timeout=FILE_INFO_TIMEOUT_SECONDS)
        if not result or not result.get("file_path"):
            raise UpstreamClientError(f"Telegram returned no file_path for {file_id}")
        return TelegramFile(
            file_id=file_id,
            file_path=result["file_path"],
            file_size=result.get("file_size"),
        )

    async def download_file(self, file_path: str) -> bytes:
        url = f"{self.file_url}/{file_path}"
        try:
            response = await self._client.get(url, timeout=FILE_DOWNLOAD_TIMEOUT_SECONDS)
        except httpx.TimeoutException as e:
            raise NetworkTimeout(f"Download of {file_path} timed out") from e
        except httpx.TransportError as e:
            raise UpstreamServerError(f"Download of {file_path} failed: {e}") from e

        if response.status_code >= 500:
            raise UpstreamServerError(f"Download of {file_path} failed", status_code=response.status_code)
        if response.status_code >= 400:
            raise UpstreamClientError(f"Download of {file_path} rejected", status_code=response.status_code)
        return response.content
