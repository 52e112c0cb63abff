"""Move user photos from Telegram into object storage.

The whole transfer (resolve, download, upload) is retried with linear
backoff; the upload step has its own short retry loop on top. Validation and
resolution errors end the transfer at once. Callers get a public URL or None
and must carry on without the image when it is None.
"""

import asyncio
import mimetypes
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from app.logging_config import get_logger
from app.services.errors import (
    NetworkTimeout,
    StorageError,
    UpstreamClientError,
    UpstreamServerError,
    ValidationError,
)
from app.services.storage_service import StorageService
from app.services.telegram_service import TelegramService

logger = get_logger("file_transfer")

MAX_FILE_SIZE_BYTES = 20 * 1024 * 1024
TRANSIENT_ERRORS = (NetworkTimeout, UpstreamServerError, StorageError)


@dataclass
class TransferAttempt:
    file_id: str
    owner_id: int
    attempt_number: int


def build_destination_path(owner_id: int, file_path: str) -> str:
    ext = PurePosixPath(file_path).suffix.lstrip(".").lower() or "jpg"
    return f"{owner_id}_{int(time.time() * 1000)}_{uuid4().hex[:8]}.{ext}"


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


class FileTransferService:
    def __init__(
        self,
        telegram: TelegramService,
        storage: StorageService,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_file_size: int = MAX_FILE_SIZE_BYTES,
        upload_attempts: int = 2,
        upload_retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.telegram = telegram
        self.storage = storage
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_file_size = max_file_size
        self.upload_attempts = upload_attempts
        self.upload_retry_delay = upload_retry_delay
        self._sleep = sleep

    async def transfer(self, file_id: str, owner_id: int) -> Optional[str]:
        """Copy a Telegram file into storage and return its public URL, or None."""
        for attempt_number in range(1, self.max_attempts + 1):
            attempt = TransferAttempt(file_id=file_id, owner_id=owner_id, attempt_number=attempt_number)
            try:
                return await self._attempt(attempt)
            except (ValidationError, UpstreamClientError) as e:
                logger.warning(
                    f"File transfer rejected: {e}",
                    extra={"context": {"file_id": file_id, "owner_id": owner_id, "attempt": attempt_number}},
                )
                return None
            except TRANSIENT_ERRORS as e:
                logger.warning(
                    f"File transfer attempt {attempt_number}/{self.max_attempts} failed: {e}",
                    extra={"context": {"file_id": file_id, "owner_id": owner_id, "error_type": type(e).__name__}},
                )
            except Exception as e:
                logger.error(
                    f"Unexpected file transfer error on attempt {attempt_number}: {e}",
                    extra={"context": {"file_id": file_id, "owner_id": owner_id}},
                    exc_info=True,
                )

            if attempt_number < self.max_attempts:
                await self._sleep(self.backoff_seconds * attempt_number)

        logger.error(
            "File transfer gave up",
            extra={"context": {"file_id": file_id, "owner_id": owner_id, "attempts": self.max_attempts}},
        )
        return None

    async def _attempt(self, attempt: TransferAttempt) -> str:
        telegram_file = await self.telegram.get_file(attempt.file_id)

        if telegram_file.file_size is not None and telegram_file.file_size > self.max_file_size:
            raise ValidationError(
                f"File {attempt.file_id} is {telegram_file.file_size} bytes, limit is {self.max_file_size}"
            )

        data = await self.telegram.download_file(telegram_file.file_path)

        if len(data) > self.max_file_size:
            raise ValidationError(f"Downloaded file {attempt.file_id} exceeds {self.max_file_size} bytes")

        if telegram_file.file_size is not None and len(data) != telegram_file.file_size:
            logger.warning(
                "Downloaded size differs from metadata",
                extra={
                    "context": {
                        "file_id": attempt.file_id,
                        "expected": telegram_file.file_size,
                        "actual": len(data),
                    }
                },
            )

        destination = build_destination_path(attempt.owner_id, telegram_file.file_path)
        await self._upload_with_retry(destination, data, guess_content_type(destination))
        return self.storage.get_public_url(destination)

    async def _upload_with_retry(self, path: str, data: bytes, content_type: str) -> None:
        for upload_attempt in range(1, self.upload_attempts + 1):
            try:
                await self.storage.upload(path, data, content_type)
                return
            except StorageError as e:
                if upload_attempt == self.upload_attempts:
                    raise
                logger.warning(f"Upload attempt {upload_attempt} for {path} failed: {e}")
                await self._sleep(self.upload_retry_delay)
