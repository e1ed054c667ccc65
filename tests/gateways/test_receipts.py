"""Tests for receipt keys and the S3 receipt storage."""

import re
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from commission_config.schema import ReceiptStorageSettings
from commission_gateways.receipts import S3ReceiptStorage, receipt_key
from commission_kernel.domain.types import ReceiptLocator
from commission_kernel.exceptions import ConfigurationError


class StubS3Client:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        self.calls.append((operation, Params, ExpiresIn))
        if self.fail:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, operation)
        return f"https://r2.test/{Params['Bucket']}/{Params['Key']}?op={operation}"


SETTINGS = ReceiptStorageSettings(bucket="receipts", presign_expires_seconds=600)


class TestReceiptKey:
    def test_format(self):
        key = receipt_key("prov-1", "Bank Transfer.JPG", now=datetime(2024, 3, 9, tzinfo=timezone.utc))
        assert re.fullmatch(r"manual-payments/prov-1/BankTransfer_20240309_[0-9a-f]{8}\.jpg", key)

    def test_without_extension(self):
        key = receipt_key("prov-1", "???", now=datetime(2024, 3, 9, tzinfo=timezone.utc))
        assert re.fullmatch(r"manual-payments/prov-1/receipt_20240309_[0-9a-f]{8}", key)

    def test_keys_are_unique(self):
        assert receipt_key("p", "a.pdf") != receipt_key("p", "a.pdf")


class TestS3ReceiptStorage:
    def test_create_upload(self):
        client = StubS3Client()
        storage = S3ReceiptStorage(SETTINGS, client=client)

        upload = storage.create_upload("prov-1", "transfer.pdf")

        operation, params, expires = client.calls[0]
        assert operation == "put_object"
        assert params["ContentType"] == "application/pdf"
        assert params["Bucket"] == "receipts"
        assert expires == 600
        assert upload.locator.bucket == "receipts"
        assert upload.locator.filename == "transfer.pdf"
        assert upload.locator.key == params["Key"]
        assert upload.expires_in == 600

    def test_download_url(self):
        storage = S3ReceiptStorage(SETTINGS, client=StubS3Client())
        url = storage.download_url(ReceiptLocator(bucket="archive", key="manual-payments/p/r.png"))
        assert url == "https://r2.test/archive/manual-payments/p/r.png?op=get_object"

    def test_download_url_falls_back_to_configured_bucket(self):
        client = StubS3Client()
        S3ReceiptStorage(SETTINGS, client=client).download_url(ReceiptLocator(bucket=None, key="k"))
        assert client.calls[0][1]["Bucket"] == "receipts"

    def test_signing_failure_returns_none(self):
        storage = S3ReceiptStorage(SETTINGS, client=StubS3Client(fail=True))
        assert storage.download_url(ReceiptLocator(bucket="receipts", key="k")) is None

    def test_bucket_required(self):
        storage = S3ReceiptStorage(ReceiptStorageSettings())
        with pytest.raises(ConfigurationError):
            storage.create_upload("prov-1", "r.pdf")
