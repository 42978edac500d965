"""
Audio blob storage over HTTP.

Clips are PUT to an object store (S3-compatible presigned bucket, MinIO,
GCS XML API, ...) in chunks so upload progress can be reported. The engine
never inspects the bytes; it only keeps the URL the clip is served from.
"""

from collections.abc import AsyncIterator, Callable
from typing import Protocol

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[float], None]


class BlobStorageError(Exception):
    """Upload to blob storage failed."""


class BlobStorage(Protocol):
    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Store data at path and return the URL it is served from."""
        ...


class HttpBlobStorage:
    """PUT-based uploader reporting fractional progress per chunk sent."""

    def __init__(
        self,
        base_url: str | None = None,
        public_url: str | None = None,
        chunk_size: int | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.BLOB_STORAGE_URL).rstrip("/")
        self.public_url = (public_url or settings.blob_public_url()).rstrip("/")
        self.chunk_size = chunk_size or settings.BLOB_UPLOAD_CHUNK_SIZE
        self.timeout = timeout or settings.BLOB_UPLOAD_TIMEOUT
        self._transport = transport

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """
        Upload data and return its public URL.

        Raises:
            BlobStorageError: On transport errors or a non-2xx response
        """
        path = path.lstrip("/")
        total = len(data)

        async def _chunks() -> AsyncIterator[bytes]:
            sent = 0
            for start in range(0, total, self.chunk_size):
                chunk = data[start : start + self.chunk_size]
                yield chunk
                sent += len(chunk)
                if on_progress:
                    on_progress(sent / total)

        headers = {"Content-Type": content_type, "Content-Length": str(total)}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.put(
                    f"{self.base_url}/{path}", content=_chunks(), headers=headers
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Blob upload rejected",
                path=path,
                status_code=e.response.status_code,
                size_bytes=total,
            )
            raise BlobStorageError(f"Upload rejected with status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Blob upload failed", path=path, error=str(e), error_type=type(e).__name__)
            raise BlobStorageError(f"Upload failed: {e}") from e

        if on_progress and total == 0:
            on_progress(1.0)

        logger.info("Blob uploaded", path=path, size_bytes=total)
        return f"{self.public_url}/{path}"
