"""S3-compatible blob store used to host videos for Meta's `file_url` upload path.

Enable with VIDEO_UPLOAD_SOURCE=blob and the BLOB_* variables below.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class BlobStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class BlobStoreConfig:
    bucket: str
    endpoint_url: str | None = None
    region: str = "us-east-1"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    prefix: str = "bulk-ads"
    presign_ttl_s: int = 3600
    public_base_url: str | None = None

    @staticmethod
    def from_env() -> "BlobStoreConfig":
        load_dotenv(override=False)
        bucket = (os.getenv("BLOB_BUCKET") or "").strip()
        if not bucket:
            raise ValueError("BLOB_BUCKET is required when VIDEO_UPLOAD_SOURCE=blob")
        return BlobStoreConfig(
            bucket=bucket,
            endpoint_url=(os.getenv("BLOB_ENDPOINT_URL") or "").strip() or None,
            region=(os.getenv("BLOB_REGION") or "").strip() or "us-east-1",
            access_key_id=(os.getenv("BLOB_ACCESS_KEY_ID") or "").strip() or None,
            secret_access_key=(os.getenv("BLOB_SECRET_ACCESS_KEY") or "").strip() or None,
            prefix=(os.getenv("BLOB_PREFIX") or "bulk-ads").strip("/"),
            presign_ttl_s=int((os.getenv("BLOB_PRESIGN_TTL_S") or "3600").strip() or "3600"),
            public_base_url=(os.getenv("BLOB_PUBLIC_BASE_URL") or "").strip().rstrip("/") or None,
        )


class BlobStore:
    def __init__(self, cfg: BlobStoreConfig, *, client: Any = None):
        self.cfg = cfg
        if client is None:
            session = boto3.session.Session()
            client = session.client(
                "s3",
                endpoint_url=cfg.endpoint_url,
                aws_access_key_id=cfg.access_key_id,
                aws_secret_access_key=cfg.secret_access_key,
                region_name=cfg.region,
                config=Config(signature_version="s3v4"),
            )
        self.client = client

    def build_key(self, filename: str) -> str:
        """<prefix>/<uuid>-<filename>"""
        name = os.path.basename(filename or "") or "upload.bin"
        parts = [p for p in [self.cfg.prefix] if p]
        parts.append(f"{uuid.uuid4().hex}-{name}")
        return "/".join(parts)

    def url_for(self, bucket: str, key: str) -> str:
        if self.cfg.public_base_url:
            return f"{self.cfg.public_base_url}/{key}"
        return self.client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=int(self.cfg.presign_ttl_s),
        )

    def put(self, bucket: Optional[str], key: str, data: bytes, *, content_type: str | None = None) -> str:
        bucket = bucket or self.cfg.bucket
        kwargs = {"Bucket": bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Could not store s3://{bucket}/{key}: {e}") from e
        return self.url_for(bucket, key)

    def put_file(self, bucket: Optional[str], key: str, fh: BinaryIO, *, content_type: str | None = None) -> str:
        """Streaming variant of `put` for large videos."""
        bucket = bucket or self.cfg.bucket
        extra = {"ContentType": content_type} if content_type else None
        try:
            self.client.upload_fileobj(fh, bucket, key, ExtraArgs=extra)
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Could not store s3://{bucket}/{key}: {e}") from e
        logger.info("Stored s3://%s/%s", bucket, key)
        return self.url_for(bucket, key)
