"""Object storage access for source and overlay images."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import boto3
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from imagex.config import Settings

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}
_ACCESS_DENIED_CODES = {"AccessDenied", "403", "Forbidden"}


class StorageError(Exception):
    """Base class for storage failures."""


class ObjectNotFoundError(StorageError):
    """The bucket or key does not exist."""


class ObjectAccessDeniedError(StorageError):
    """The service is not allowed to read the object."""


class StorageFetch(Protocol):
    """Protocol for fetching object bytes."""

    def get(self, bucket: str, key: str) -> bytes:
        """Return the object body.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ObjectAccessDeniedError: If reading the object is forbidden.
            StorageError: For any other storage failure.
        """
        ...


class S3Storage:
    """StorageFetch backed by an S3 client."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> S3Storage:
        return cls(boto3.client("s3", region_name=settings.aws_region))

    def get(self, bucket: str, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            body: bytes = response["Body"].read()
        except ClientError as error:
            code = str(error.response.get("Error", {}).get("Code", ""))
            message = f"{bucket}/{key}: {error}"
            if code in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(message) from error
            if code in _ACCESS_DENIED_CODES:
                raise ObjectAccessDeniedError(message) from error
            raise StorageError(message) from error
        logger.debug("Fetched s3://%s/%s (%d bytes)", bucket, key, len(body))
        return body
