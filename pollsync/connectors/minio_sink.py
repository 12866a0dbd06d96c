"""
MinIO Sink
==========

Writes each change record to MinIO object storage (S3-compatible).

Object names are derived from the record's idempotency key, so a
redelivered record overwrites its earlier copy instead of adding a new one.
Supports JSON and CSV objects.
"""

import io
import json
import logging
import re
from typing import Dict

import pandas as pd
from minio import Minio
from minio.error import S3Error

from ..errors import SinkFailure
from ..models import ChangeRecord
from .base import Sink

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class MinIOSink(Sink):
    """
    MinIO object storage sink for change records.
    """

    def __init__(self, config: Dict):
        """
        Initialize MinIO sink.

        Args:
            config: Connection configuration dict with endpoint, access_key,
                secret_key, bucket, and optional secure, prefix, file_format
                ('json' or 'csv')
        """
        self.config = config
        self.client = None
        self.bucket = config.get("bucket", "raw-data")
        self.prefix = config.get("prefix", "pollsync").strip("/")
        self.file_format = config.get("file_format", "json")

        if self.file_format not in ("json", "csv"):
            raise ValueError(f"Unsupported file format: {self.file_format}")

    def connect(self):
        """Establish connection to MinIO and ensure the bucket exists."""
        self.client = Minio(
            endpoint=self.config["endpoint"],
            access_key=self.config["access_key"],
            secret_key=self.config["secret_key"],
            secure=self.config.get("secure", False)
        )

        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")

        logger.info(f"Connected to MinIO: {self.config['endpoint']}, bucket: {self.bucket}")

    def object_name(self, record: ChangeRecord) -> str:
        """Deterministic object path for a record version."""
        tiebreak = _UNSAFE.sub("_", str(record.tiebreak_id))
        stamp = record.timestamp.strftime("%Y%m%dT%H%M%S%fZ")
        return f"{self.prefix}/{record.entity_name}/{tiebreak}/{stamp}.{self.file_format}"

    def _serialize(self, record: ChangeRecord) -> bytes:
        row = {
            **record.payload,
            "gpk": record.idempotency_key,
            "op": record.operation.value,
            "source_ts": record.timestamp.isoformat()
        }
        if self.file_format == "csv":
            return pd.DataFrame([row]).to_csv(index=False).encode('utf-8')
        return json.dumps(row, default=str, sort_keys=True).encode('utf-8')

    def apply(self, record: ChangeRecord) -> str:
        """
        Upload one record.

        Args:
            record: Change record to persist

        Returns:
            Full object path
        """
        if self.client is None:
            self.connect()

        object_name = self.object_name(record)
        data = self._serialize(record)
        content_type = "text/csv" if self.file_format == "csv" else "application/json"

        try:
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=object_name,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type
            )
        except S3Error as e:
            raise SinkFailure(f"MinIO upload failed for {object_name}: {e}", record.entity_name, record)

        logger.debug(f"Written {record.idempotency_key} to s3://{self.bucket}/{object_name}")
        return f"s3://{self.bucket}/{object_name}"
