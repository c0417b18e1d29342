"""
S3-compatible storage integration for AWS S3, Backblaze B2, MinIO, etc.
Uses boto3 for universal S3-compatible storage operations.

The ingestion pipeline only talks to storage through the ``BlobStore``
protocol below; ``S3BlobStore`` is the production implementation.
"""
import logging
from typing import Any, BinaryIO, Dict, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ledger_ingest.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


class StorageNotFoundError(StorageDownloadError):
    """Raised when the requested object does not exist."""
    pass


class BlobStore(Protocol):
    """Operations the ingestion core needs from object storage."""

    def download(self, location: str, key: str) -> BinaryIO:
        ...

    def download_range(self, location: str, key: str, start: int, end: int) -> bytes:
        ...

    def upload(
        self,
        location: str,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        content_disposition: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    def delete(self, location: str, key: str) -> bool:
        ...

    def get_size(self, location: str, key: str) -> int:
        ...

    def generate_presigned_download_url(self, location: str, key: str, expires_in: int = 900) -> str:
        ...


def get_storage_client():
    """
    Get S3-compatible storage client.

    Returns:
        boto3 S3 client configured for the storage provider

    Raises:
        StorageConnectionError: If the client cannot be created
    """
    config = Config(
        signature_version='s3v4',
        retries={'max_attempts': settings.storage_max_retries, 'mode': 'standard'},
        connect_timeout=settings.storage_connect_timeout_seconds,
        read_timeout=settings.storage_read_timeout_seconds,
    )

    client_kwargs = {
        'service_name': 's3',
        'config': config,
    }

    # Fall back to the default credential chain when keys are not configured
    if settings.storage_access_key_id and settings.storage_secret_access_key:
        client_kwargs['aws_access_key_id'] = settings.storage_access_key_id
        client_kwargs['aws_secret_access_key'] = settings.storage_secret_access_key

    # Add endpoint URL for non-AWS providers (B2, MinIO, etc.)
    if settings.storage_endpoint_url:
        client_kwargs['endpoint_url'] = settings.storage_endpoint_url

    if settings.storage_region:
        client_kwargs['region_name'] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except Exception as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}") from e


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3BlobStore:
    """``BlobStore`` backed by an S3-compatible bucket; ``location`` is the bucket name."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client

    def download(self, location: str, key: str) -> BinaryIO:
        """
        Open a streaming download of an object.

        Returns:
            The response body; callers read it incrementally and close it.

        Raises:
            StorageNotFoundError: If the object does not exist
            StorageDownloadError: If the download fails
        """
        try:
            response = self.client.get_object(Bucket=location, Key=key)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('NoSuchKey', '404'):
                raise StorageNotFoundError(f"File not found: {location}/{key}") from e
            logger.error(f"Storage download failed: {error_code} - {str(e)}")
            raise StorageDownloadError(f"Download failed: {str(e)}") from e
        except BotoCoreError as e:
            logger.error(f"Unexpected error during download: {str(e)}")
            raise StorageDownloadError(f"Download failed: {str(e)}") from e

        body = response.get('Body')
        if body is None:
            raise StorageDownloadError(f"Empty file body received for {location}/{key}")
        return body

    def download_range(self, location: str, key: str, start: int, end: int) -> bytes:
        """
        Download an inclusive byte range of an object.

        Objects shorter than the range are returned whole.
        """
        try:
            response = self.client.get_object(
                Bucket=location,
                Key=key,
                Range=f"bytes={start}-{end}",
            )
            return response['Body'].read()
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('NoSuchKey', '404'):
                raise StorageNotFoundError(f"File not found: {location}/{key}") from e
            logger.error(f"Storage range download failed: {error_code} - {str(e)}")
            raise StorageDownloadError(f"Range download failed: {str(e)}") from e
        except BotoCoreError as e:
            logger.error(f"Unexpected error during range download: {str(e)}")
            raise StorageDownloadError(f"Range download failed: {str(e)}") from e

    def upload(
        self,
        location: str,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        content_disposition: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Upload bytes to storage.

        Returns:
            Dictionary with upload details:
            - file_id: The object's ETag
            - file_path: Full key in storage
            - size: File size in bytes
        """
        params = {
            'Bucket': location,
            'Key': key,
            'Body': data,
        }
        if content_type:
            params['ContentType'] = content_type
        if content_disposition:
            params['ContentDisposition'] = content_disposition

        try:
            response = self.client.put_object(**params)
        except ClientError as e:
            logger.error(f"Storage upload failed: {_error_code(e)} - {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}") from e
        except BotoCoreError as e:
            logger.error(f"Unexpected error during upload: {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}") from e

        return {
            "file_id": response.get('ETag', '').strip('"'),
            "file_path": key,
            "size": len(data),
        }

    def delete(self, location: str, key: str) -> bool:
        """Delete an object. Returns False instead of raising on failure."""
        try:
            self.client.delete_object(Bucket=location, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error deleting file from storage: {str(e)}")
            return False

    def get_size(self, location: str, key: str) -> int:
        """Return the object's size in bytes."""
        try:
            response = self.client.head_object(Bucket=location, Key=key)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('NoSuchKey', '404'):
                raise StorageNotFoundError(f"File not found: {location}/{key}") from e
            logger.error(f"Failed to get file metadata: {str(e)}")
            raise StorageError(f"Failed to get file metadata: {str(e)}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to get file metadata: {str(e)}") from e
        return int(response.get('ContentLength', 0))

    def generate_presigned_download_url(self, location: str, key: str, expires_in: int = 900) -> str:
        """
        Generate a pre-signed URL for secure file download.

        Raises:
            StorageError: If URL generation fails
        """
        try:
            return self.client.generate_presigned_url(
                'get_object',
                Params={'Bucket': location, 'Key': key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to generate presigned download URL: {str(e)}")
            raise StorageError(f"Failed to generate download URL: {str(e)}") from e
