import json

import httpx
import pytest

from app.services.circuit_breaker import (
    MESSAGING_API_RESOURCE,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from app.services.errors import NetworkTimeout, UpstreamClientError, UpstreamServerError
from app.services.telegram_service import TelegramService

BASE_URL = "https://telegram.test"


def _service(handler, breaker=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramService(
        "TOKEN",
        breaker or CircuitBreaker(),
        base_url=BASE_URL,
        http_client=client,
        **kwargs,
    )


def _ok(result=True):
    return httpx.Response(200, json={"ok": True, "result": result})


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_posts_json_to_bot_endpoint(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return _ok({"message_id": 1})

        telegram = _service(handler)
        ok = await telegram.send_message(123, "Hello", reply_markup={"remove_keyboard": True})

        assert ok is True
        assert str(seen[0].url) == f"{BASE_URL}/botTOKEN/sendMessage"
        body = json.loads(seen[0].content)
        assert body == {
            "chat_id": 123,
            "text": "Hello",
            "parse_mode": "HTML",
            "reply_markup": {"remove_keyboard": True},
        }

    @pytest.mark.asyncio
    async def test_client_error_returns_false_without_tripping(self):
        breaker = CircuitBreaker()
        telegram = _service(
            lambda request: httpx.Response(400, json={"ok": False, "description": "chat not found"}),
            breaker=breaker,
            breaker_config=CircuitBreakerConfig(failure_threshold=1),
        )

        assert await telegram.send_message(1, "x") is False
        assert await telegram.send_message(1, "x") is False
        assert breaker.state(MESSAGING_API_RESOURCE) == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_server_errors_open_the_circuit(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502, text="Bad Gateway")

        breaker = CircuitBreaker()
        telegram = _service(handler, breaker=breaker, breaker_config=CircuitBreakerConfig(failure_threshold=2))

        assert await telegram.send_message(1, "a") is False
        assert await telegram.send_message(1, "b") is False
        assert breaker.state(MESSAGING_API_RESOURCE) == CircuitState.OPEN

        assert await telegram.send_message(1, "c") is False
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_non_json_client_error_does_not_trip(self):
        breaker = CircuitBreaker()
        telegram = _service(
            lambda request: httpx.Response(413, text="<html><body>Request Entity Too Large</body></html>"),
            breaker=breaker,
            breaker_config=CircuitBreakerConfig(failure_threshold=5),
        )

        for _ in range(5):
            assert await telegram.send_message(1, "x") is False

        assert breaker.state(MESSAGING_API_RESOURCE) == CircuitState.CLOSED
        assert breaker.stats()[MESSAGING_API_RESOURCE]["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        breaker = CircuitBreaker()
        telegram = _service(handler, breaker=breaker, breaker_config=CircuitBreakerConfig(failure_threshold=1))

        assert await telegram.send_message(1, "a") is False
        assert breaker.state(MESSAGING_API_RESOURCE) == CircuitState.OPEN


class TestCall:
    @pytest.mark.asyncio
    async def test_error_mapping(self):
        responses = {
            "a": httpx.Response(503),
            "b": httpx.Response(200, text="not json"),
            "c": httpx.Response(403, json={"ok": False}),
            "d": httpx.Response(200, json={"ok": False, "description": "bad"}),
            "e": httpx.Response(429, text="<html>slow down</html>"),
        }
        telegram = _service(lambda request: responses[request.url.path.rsplit("/", 1)[-1]])

        with pytest.raises(UpstreamServerError):
            await telegram._call("a")
        with pytest.raises(UpstreamServerError):
            await telegram._call("b")
        with pytest.raises(UpstreamClientError) as exc_info:
            await telegram._call("c")
        assert exc_info.value.status_code == 403
        with pytest.raises(UpstreamClientError):
            await telegram._call("d")
        with pytest.raises(UpstreamClientError) as exc_info:
            await telegram._call("e")
        assert exc_info.value.status_code == 429
        assert "slow down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connect_error_is_server_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamServerError):
            await _service(handler)._call("getMe")


class TestOtherSends:
    @pytest.mark.asyncio
    async def test_send_photo_and_location(self):
        seen = []

        def handler(request):
            seen.append((request.url.path.rsplit("/", 1)[-1], json.loads(request.content)))
            return _ok()

        telegram = _service(handler)
        assert await telegram.send_photo(1, "https://storage.test/a.jpg", caption="Bread") is True
        assert await telegram.send_location(1, 52.5, 13.4) is True
        assert await telegram.answer_callback("cb-1") is True

        assert [method for method, _ in seen] == ["sendPhoto", "sendLocation", "answerCallbackQuery"]
        assert seen[0][1]["caption"] == "Bread"
        assert seen[1][1] == {"chat_id": 1, "latitude": 52.5, "longitude": 13.4}


class TestSetWebhook:
    @pytest.mark.asyncio
    async def test_sends_secret_token(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return _ok()

        telegram = _service(handler, webhook_secret="s3cret")
        assert await telegram.set_webhook("https://bot.example/telegram-webhook") is True

        assert seen[0]["secret_token"] == "s3cret"
        assert seen[0]["allowed_updates"] == ["message", "callback_query"]


class TestFileTransport:
    @pytest.mark.asyncio
    async def test_get_file(self):
        telegram = _service(lambda request: _ok({"file_id": "f1", "file_path": "photos/f1.jpg", "file_size": 1024}))

        telegram_file = await telegram.get_file("f1")

        assert telegram_file.file_path == "photos/f1.jpg"
        assert telegram_file.file_size == 1024

    @pytest.mark.asyncio
    async def test_get_file_without_path_is_client_error(self):
        telegram = _service(lambda request: _ok({"file_id": "f1"}))

        with pytest.raises(UpstreamClientError):
            await telegram.get_file("f1")

    @pytest.mark.asyncio
    async def test_get_file_bypasses_breaker(self):
        breaker = CircuitBreaker()
        telegram = _service(lambda request: httpx.Response(500), breaker=breaker)

        with pytest.raises(UpstreamServerError):
            await telegram.get_file("f1")
        assert breaker.stats() == {}

    @pytest.mark.asyncio
    async def test_download_file(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, content=b"\xff\xd8jpeg")

        data = await _service(handler).download_file("photos/f1.jpg")

        assert data == b"\xff\xd8jpeg"
        assert seen == [f"{BASE_URL}/file/botTOKEN/photos/f1.jpg"]

    @pytest.mark.asyncio
    async def test_download_errors(self):
        def handler(request):
            if request.url.path.endswith("gone.jpg"):
                return httpx.Response(404)
            raise httpx.ReadTimeout("slow", request=request)

        telegram = _service(handler)
        with pytest.raises(UpstreamClientError):
            await telegram.download_file("gone.jpg")
        with pytest.raises(NetworkTimeout):
            await telegram.download_file("slow.jpg")
