"""Supabase Storage client for listing photos."""

from typing import Optional
from urllib.parse import quote

import httpx

from app.logging_config import get_logger
from app.services.errors import StorageError

logger = get_logger("storage_service")

UPLOAD_TIMEOUT_SECONDS = 30.0


class StorageService:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self._client = http_client or httpx.AsyncClient()

    @property
    def public_prefix(self) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/"

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``path``. Raises StorageError on any failure."""
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path, safe='/')}"
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": content_type,
            "x-upsert": "false",
        }
        try:
            response = await self._client.post(url, content=data, headers=headers, timeout=UPLOAD_TIMEOUT_SECONDS)
        except httpx.HTTPError as e:
            raise StorageError(f"Upload of {path} failed: {e}") from e

        if response.status_code >= 300:
            raise StorageError(f"Upload of {path} failed with {response.status_code}: {response.text[:200]}")

        logger.info(f"Uploaded {path}", extra={"context": {"bytes": len(data), "content_type": content_type}})

    def get_public_url(self, path: str) -> str:
        return f"{self.public_prefix}{quote(path, safe='/')}"

    def is_public_url(self, url: Optional[str]) -> bool:
        """True for URLs pointing into this bucket's public area."""
        return bool(url) and url.startswith(self.public_prefix) and len(url) > len(self.public_prefix)
