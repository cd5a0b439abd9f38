from __future__ import annotations

from datetime import datetime
from typing import Any, BinaryIO

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .errors import UploadError, error_message


class ObjectStorage:
    """Thin wrapper over an S3 client bound to one bucket."""

    def __init__(self, s3_client: Any, bucket: str) -> None:
        self.s3_client = s3_client
        self.bucket = bucket

    @classmethod
    def from_config(cls, config: S3Config) -> ObjectStorage:
        # Unsigned payload: otherwise botocore reads the whole body to hash it before sending.
        s3_options: dict[str, str | bool] = {"payload_signing_enabled": False}
        if config.endpoint_url:
            # MinIO and most self-hosted endpoints only serve path-style buckets.
            s3_options["addressing_style"] = "path"
        session = boto3.session.Session()
        s3_client = session.client(
            "s3",
            endpoint_url=config.endpoint_url,
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            config=BotoConfig(
                s3=s3_options,
                retries={"total_max_attempts": 1, "mode": "standard"},
                request_checksum_calculation="when_required",
                response_checksum_validation="when_required",
            ),
        )
        return cls(s3_client, config.bucket)

    @property
    def endpoint(self) -> str:
        meta = getattr(self.s3_client, "meta", None)
        return str(getattr(meta, "endpoint_url", "") or "")

    def put_object(
        self,
        key: str,
        stream: BinaryIO,
        size: int,
        *,
        content_type: str,
        storage_class: str | None = None,
        expires: datetime | None = None,
    ) -> None:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": stream,
            "ContentLength": size,
            "ContentType": content_type,
        }
        if storage_class:
            params["StorageClass"] = storage_class
        if expires is not None:
            params["Expires"] = expires
        try:
            self.s3_client.put_object(**params)
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code", "unknown")
            raise UploadError(
                f"S3 rejected upload of '{key}' to bucket '{self.bucket}' ({code}): {error_message(error)}"
            ) from error
        except BotoCoreError as error:
            raise UploadError(f"S3 upload of '{key}' to bucket '{self.bucket}' failed: {error_message(error)}") from error
