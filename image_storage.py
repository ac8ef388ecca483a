"""Where submitted images live: a local upload directory or hosted object storage."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import requests
from werkzeug.utils import secure_filename

from game_errors import InvalidUpload, StoreFailure

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class ImageStorage:
    def __init__(self, max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES):
        self.max_bytes = int(max_bytes)

    def save(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return a public URL for it."""
        self._validate(data, content_type)
        return self._put(self.object_key(key), data, content_type)

    def _put(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    @staticmethod
    def object_key(key: str) -> str:
        parts = [secure_filename(part) for part in str(key or "").split("/")]
        parts = [part for part in parts if part]
        if not parts:
            raise InvalidUpload("Image name is required.")
        return "/".join(parts)

    def _validate(self, data: bytes, content_type: str) -> None:
        if not data:
            raise InvalidUpload("Image file is empty.")
        if not str(content_type or "").lower().startswith("image/"):
            raise InvalidUpload(
                "Only image uploads are accepted.",
                details={"content_type": content_type},
            )
        if len(data) > self.max_bytes:
            raise InvalidUpload(
                f"Image is too large ({len(data)} bytes, limit {self.max_bytes}).",
                details={"size": len(data), "limit": self.max_bytes},
            )


class LocalImageStorage(ImageStorage):
    def __init__(
        self,
        directory: str | Path,
        public_base_url: str = "",
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    ):
        super().__init__(max_bytes)
        self.directory = Path(directory)
        self.public_base_url = (public_base_url or "").rstrip("/")

    def _put(self, key: str, data: bytes, content_type: str) -> str:
        target = self.directory / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StoreFailure(f"Could not save image: {exc}") from exc
        logger.info("Saved image %s (%s bytes)", key, len(data))
        return f"{self.public_base_url}/uploads/{quote(key)}"

    def path_for(self, key: str) -> Optional[Path]:
        """Resolve a stored key to a file inside the upload directory."""
        try:
            target = (self.directory / self.object_key(key)).resolve()
        except InvalidUpload:
            return None
        root = self.directory.resolve()
        if root not in target.parents or not target.is_file():
            return None
        return target


class SupabaseImageStorage(ImageStorage):
    """Supabase Storage bucket with public read access."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        bucket: str,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        timeout: float = 20,
    ):
        super().__init__(max_bytes)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bucket = bucket
        self.timeout = timeout

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

    def _put(self, key: str, data: bytes, content_type: str) -> str:
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(key)}"
        logger.info("Image storage request: POST %s", url)
        try:
            response = requests.post(
                url,
                data=data,
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": content_type,
                    "x-upsert": "true",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StoreFailure(f"Image upload failed: {exc}") from exc
        if response.status_code >= 400:
            raise StoreFailure(
                f"Image upload failed with HTTP {response.status_code}.",
                details={"status": response.status_code},
            )
        return self.public_url(key)


def get_image_storage(config) -> ImageStorage:
    if config.supabase_url and config.supabase_key:
        logger.info("Image storage: using bucket %s", config.supabase_bucket)
        return SupabaseImageStorage(
            config.supabase_url,
            config.supabase_key,
            config.supabase_bucket,
            max_bytes=config.max_upload_bytes,
        )
    logger.info("Image storage: using local directory %s", config.upload_dir)
    return LocalImageStorage(
        config.upload_dir,
        public_base_url=config.public_base_url,
        max_bytes=config.max_upload_bytes,
    )
