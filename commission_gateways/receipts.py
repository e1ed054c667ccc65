"""
Receipt storage for manual payments.

Providers upload transfer receipts straight to object storage using a
presigned URL; the kernel only ever stores the resulting locator.
``S3ReceiptStorage`` works against S3 or any S3-compatible endpoint
(Cloudflare R2 uses region ``auto``).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from commission_config.schema import ReceiptStorageSettings
from commission_kernel.domain.types import ReceiptLocator
from commission_kernel.exceptions import ConfigurationError
from commission_kernel.logging_config import get_logger

logger = get_logger("gateways.receipts")

RECEIPT_PREFIX = "manual-payments"


@dataclass(frozen=True)
class ReceiptUpload:
    """Where and how a provider uploads a receipt."""

    locator: ReceiptLocator
    upload_url: str
    expires_in: int


class ReceiptStorage(Protocol):
    def create_upload(self, provider_id: str, filename: str) -> ReceiptUpload: ...

    def download_url(self, locator: ReceiptLocator) -> str | None: ...


def receipt_key(provider_id: str, filename: str, now: datetime | None = None) -> str:
    """Unique object key that keeps the original extension."""
    now = now or datetime.now(timezone.utc)
    unique_id = uuid.uuid4().hex[:8]
    stem, dot, extension = filename.rpartition(".")
    if not dot:
        stem, extension = filename, ""
    safe_stem = "".join(c for c in stem if c.isalnum() or c in ("-", "_")) or "receipt"
    name = f"{safe_stem}_{now.strftime('%Y%m%d')}_{unique_id}"
    if extension:
        name = f"{name}.{extension.lower()}"
    return f"{RECEIPT_PREFIX}/{provider_id}/{name}"


def _infer_content_type(filename: str) -> str:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return {
        "pdf": "application/pdf",
        "png": "image/png",
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "webp": "image/webp",
        "heic": "image/heic",
    }.get(extension, "application/octet-stream")


class S3ReceiptStorage:
    """Presigned upload and download URLs against an S3-compatible bucket."""

    def __init__(self, settings: ReceiptStorageSettings, client=None):
        self._settings = settings
        self._client = client

    @property
    def client(self):
        """Lazy initialization of the S3 client."""
        if self._client is None:
            if not self._settings.bucket:
                raise ConfigurationError(
                    "receipts.bucket", "receipt storage bucket is not configured",
                )
            self._client = boto3.client(
                "s3",
                endpoint_url=self._settings.endpoint_url,
                aws_access_key_id=self._settings.access_key_id,
                aws_secret_access_key=self._settings.secret_access_key,
                region_name=self._settings.region,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    def create_upload(self, provider_id: str, filename: str) -> ReceiptUpload:
        key = receipt_key(provider_id, filename)
        expires = self._settings.presign_expires_seconds
        url = self.client.generate_presigned_url(
            "put_object",
            Params={
                "Bucket": self._settings.bucket,
                "Key": key,
                "ContentType": _infer_content_type(filename),
            },
            ExpiresIn=expires,
        )
        logger.info(
            "receipt_upload_issued",
            extra={"provider_id": provider_id, "receipt_key": key},
        )
        return ReceiptUpload(
            locator=ReceiptLocator(
                bucket=self._settings.bucket, key=key, filename=filename,
            ),
            upload_url=url,
            expires_in=expires,
        )

    def download_url(self, locator: ReceiptLocator) -> str | None:
        """Presigned GET for a stored receipt; None when signing fails."""
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": locator.bucket or self._settings.bucket,
                    "Key": locator.key,
                },
                ExpiresIn=self._settings.presign_expires_seconds,
            )
        except (ClientError, BotoCoreError):
            logger.warning(
                "receipt_download_url_failed",
                extra={"receipt_key": locator.key},
                exc_info=True,
            )
            return None
