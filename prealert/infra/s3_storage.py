# prealert/infra/s3_storage.py
"""
S3-compatible storage for synthesized alert audio.

Supports:
- Cloudflare R2
- AWS S3
- MinIO (for testing)

Configuration:
    S3_ENDPOINT_URL=https://<account>.r2.cloudflarestorage.com
    S3_BUCKET_NAME=prealert-audio
    S3_ACCESS_KEY=...
    S3_SECRET_KEY=...

Objects are keyed ``<alert_id>.mp3`` at the bucket root. A put for an
existing key overwrites it with the same bytes, so re-running the upload
step is harmless.
"""
from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from prealert.config import settings
from prealert.core.errors import StorageError
from prealert.infra.logging_config import get_logger
from prealert.infra.metrics import inc_counter

logger = get_logger(__name__)

AUDIO_CACHE_CONTROL = "public, max-age=31536000"  # 1 year


class AudioStorage:
    """S3-compatible storage for alert audio."""

    def __init__(self, client=None, bucket: str | None = None):
        if client is None:
            if not settings.s3_enabled:
                raise RuntimeError("S3 storage not configured")
            client = boto3.client(
                "s3",
                endpoint_url=settings.s3_endpoint_url,
                aws_access_key_id=settings.s3_access_key,
                aws_secret_access_key=settings.s3_secret_key,
                region_name=settings.s3_region,
                config=Config(
                    signature_version="s3v4",
                    retries={"max_attempts": 3, "mode": "adaptive"},
                    s3={"addressing_style": "path" if settings.s3_force_path_style else "virtual"},
                ),
            )
            logger.info(
                f"S3 storage initialized: bucket={settings.s3_bucket_name}, "
                f"endpoint={settings.s3_endpoint_url}"
            )
        self._client = client
        self._bucket = bucket or settings.s3_bucket_name

    async def put(self, key: str, data: bytes, content_type: str = "audio/mpeg") -> str:
        """
        Upload an object.

        Returns:
            The storage key (what gets saved as ``alerts.audio_url``).

        Raises:
            StorageError: on any S3 failure (retryable).
        """
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=AUDIO_CACHE_CONTROL,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: key={key}, error={e}", exc_info=True)
            inc_counter("s3_uploads_failed")
            raise StorageError(f"S3 upload failed for {key}: {e}") from e

        logger.info(f"Audio uploaded to S3: key={key}, size={len(data)}")
        inc_counter("s3_uploads_success")
        return key

    async def get(self, key: str) -> Optional[bytes]:
        """
        Download an object.

        Returns:
            Object bytes, or None if the key does not exist.
        """
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            logger.error(f"S3 download failed: key={key}, error={e}", exc_info=True)
            raise StorageError(f"S3 download failed for {key}: {e}") from e
        except BotoCoreError as e:
            logger.error(f"S3 download failed: key={key}, error={e}", exc_info=True)
            raise StorageError(f"S3 download failed for {key}: {e}") from e


_audio_storage: AudioStorage | None = None


def get_audio_storage() -> AudioStorage:
    """Get the global audio storage instance."""
    global _audio_storage
    if _audio_storage is None:
        _audio_storage = AudioStorage()
    return _audio_storage


def is_s3_available() -> bool:
    """Check if S3 storage is configured."""
    return settings.s3_enabled
