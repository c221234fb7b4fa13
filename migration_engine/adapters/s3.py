"""
Amazon S3 object store adapter (boto3).
"""

import logging
from typing import List, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from migration_engine.core.exceptions import CollaboratorError
from migration_engine.workers.object_storage import ObjectMeta

logger = logging.getLogger(__name__)


class S3ObjectStore:
    """
    ObjectStore backed by an S3 client.

    Args:
        client: boto3 S3 client; built from the other arguments when omitted
        region: AWS region
        endpoint_url: Custom endpoint (S3-compatible stores)
        profile: AWS profile name
        multipart_threshold: Size above which copies use multipart
    """

    def __init__(
        self,
        client=None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        profile: Optional[str] = None,
        multipart_threshold: int = 64 * 1024 * 1024
    ):
        if client is None:
            session_params = {}
            if profile:
                session_params["profile_name"] = profile
            session = boto3.Session(**session_params)

            client_params = {"service_name": "s3"}
            if region:
                client_params["region_name"] = region
            if endpoint_url:
                client_params["endpoint_url"] = endpoint_url
            client = session.client(**client_params)

        self.client = client
        self._transfer_config = TransferConfig(multipart_threshold=multipart_threshold)

    def list(self, bucket: str, prefix: str = "") -> List[ObjectMeta]:
        objects = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(ObjectMeta(
                        key=item["Key"],
                        size=item["Size"],
                        etag=item.get("ETag", "").strip('"') or None,
                        last_modified=item.get("LastModified"),
                    ))
        except (ClientError, BotoCoreError) as e:
            raise CollaboratorError(f"Failed to list s3://{bucket}/{prefix}: {e}") from e
        return objects

    def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        preserve_metadata: bool = True
    ) -> None:
        extra_args = {} if preserve_metadata else {"MetadataDirective": "REPLACE"}
        try:
            self.client.copy(
                {"Bucket": src_bucket, "Key": src_key},
                dst_bucket,
                dst_key,
                ExtraArgs=extra_args,
                Config=self._transfer_config,
            )
        except (ClientError, BotoCoreError) as e:
            raise CollaboratorError(f"Failed to copy {src_key} to s3://{dst_bucket}: {e}") from e

    def head(self, bucket: str, key: str) -> Optional[ObjectMeta]:
        try:
            response = self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            raise CollaboratorError(f"Failed to head s3://{bucket}/{key}: {e}") from e
        return ObjectMeta(
            key=key,
            size=response["ContentLength"],
            etag=response.get("ETag", "").strip('"') or None,
            last_modified=response.get("LastModified"),
            content_type=response.get("ContentType"),
        )

    def presign(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def delete(self, bucket: str, key: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise CollaboratorError(f"Failed to delete s3://{bucket}/{key}: {e}") from e
