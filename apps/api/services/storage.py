"""Supabase Storage uploads for shareable images."""

from __future__ import annotations

import logging
import secrets
import time
from typing import Dict, Optional

import httpx

from config import settings
from services.errors import StorageFailure

logger = logging.getLogger(__name__)


def share_filename(now: Optional[float] = None) -> str:
    """`share_<epoch ms>_<random>.jpg`, unique enough for a no-upsert bucket."""
    millis = int((now if now is not None else time.time()) * 1000)
    return f"share_{millis}_{secrets.token_hex(4)}.jpg"


class SupabaseStorageClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: Optional[str] = None,
        service_role_key: Optional[str] = None,
        bucket: Optional[str] = None,
    ) -> None:
        self.client = client
        self.base_url = (base_url if base_url is not None else settings.SUPABASE_URL).rstrip("/")
        self.service_role_key = service_role_key if service_role_key is not None else settings.SUPABASE_SERVICE_ROLE_KEY
        self.bucket = bucket or settings.SHARED_IMAGES_BUCKET

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{key}"

    async def upload(self, key: str, data: bytes, *, content_type: str = "image/jpeg") -> str:
        """Upload bytes under `key` and return the object's public URL."""
        if not self.base_url:
            raise StorageFailure("Upload failed: SUPABASE_URL is not configured")
        headers: Dict[str, str] = {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": content_type,
            "Cache-Control": "max-age=3600",
            "x-upsert": "false",
        }
        try:
            response = await self.client.post(
                f"{self.base_url}/storage/v1/object/{self.bucket}/{key}",
                headers=headers,
                content=data,
            )
        except httpx.HTTPError as exc:
            raise StorageFailure(f"Upload failed: {exc}") from exc
        if response.status_code >= 400:
            detail = (response.text or response.reason_phrase or "").strip()[:300]
            logger.error("Upload error bucket=%s key=%s status=%s: %s", self.bucket, key, response.status_code, detail)
            raise StorageFailure(f"Upload failed: {detail or response.status_code}")
        logger.info("Uploaded %s bytes to %s/%s", len(data), self.bucket, key)
        return self.public_url(key)
