"""
S3 service module for publishing snapshot archives.

This module provides functionality for:
- Uploading zip archives of snapshot outputs to S3
- Generating presigned URLs for secure, time-limited downloads

The S3 bucket name is configured via the S3_BUCKET_NAME environment variable.
When running locally without a bucket or AWS credentials, publication is
skipped gracefully.
"""

from __future__ import annotations

import logging
import os
from io import BytesIO
from typing import Optional

import boto3
from botocore.exceptions import ClientError, NoCredentialsError
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# S3 bucket name from environment variable
S3_BUCKET_NAME = os.environ.get("S3_BUCKET_NAME", "")

ARCHIVE_CONTENT_TYPE = "application/zip"

# S3 client (lazy initialization)
_s3_client = None


def _get_s3_client():
    """
    Get or create the S3 client.

    Returns:
        boto3 S3 client or None if bucket is not configured
    """
    global _s3_client
    if _s3_client is None:
        if not S3_BUCKET_NAME:
            logger.warning("S3_BUCKET_NAME not configured")
            return None
        try:
            _s3_client = boto3.client("s3")
        except Exception as e:
            logger.warning(f"Failed to create S3 client: {e}")
            _s3_client = None
    return _s3_client


def archive_key(project_id: str, sandbox_id: str, track_token: str) -> str:
    """
    Build the object key of a snapshot archive.

    Example:
        >>> archive_key("p1", "main", "0_2")
        "snapshots/p1/main/0_2.zip"
    """
    return f"snapshots/{project_id}/{sandbox_id}/{track_token}.zip"


def upload_archive(archive: BytesIO, s3_key: str) -> bool:
    """
    Upload an in-memory archive to S3.

    Args:
        archive: Archive stream; it is read from its start
        s3_key: S3 object key (path within the bucket)

    Returns:
        True if upload was successful, False otherwise
    """
    if not S3_BUCKET_NAME:
        logger.warning("S3_BUCKET_NAME not configured, skipping upload")
        return False

    client = _get_s3_client()
    if client is None:
        logger.warning("S3 client not available, skipping upload")
        return False

    try:
        archive.seek(0)
        logger.info(f"Uploading archive to s3://{S3_BUCKET_NAME}/{s3_key}")
        client.upload_fileobj(archive, S3_BUCKET_NAME, s3_key, ExtraArgs={"ContentType": ARCHIVE_CONTENT_TYPE})
        logger.info(f"Upload successful: s3://{S3_BUCKET_NAME}/{s3_key}")
        return True
    except (ClientError, NoCredentialsError) as e:
        logger.error(f"S3 upload failed: {e}")
        return False


def generate_presigned_url(s3_key: str, expiration: int = 3600) -> Optional[str]:
    """
    Generate a presigned URL for downloading a file from S3.

    Args:
        s3_key: S3 object key (path within the bucket)
        expiration: URL expiration time in seconds (default: 3600 = 1 hour)

    Returns:
        Presigned URL string, or None if generation fails
    """
    if not S3_BUCKET_NAME:
        logger.warning("S3_BUCKET_NAME not configured")
        return None

    client = _get_s3_client()
    if client is None:
        logger.warning("S3 client not available")
        return None

    try:
        url = client.generate_presigned_url(
            "get_object",
            Params={"Bucket": S3_BUCKET_NAME, "Key": s3_key},
            ExpiresIn=expiration
        )
        logger.info(f"Generated presigned URL for {s3_key} (expires in {expiration}s)")
        return url
    except (ClientError, NoCredentialsError) as e:
        logger.error(f"Failed to generate presigned URL: {e}")
        return None


def publish_archive(archive: BytesIO, s3_key: str, expiration: int = 3600) -> Optional[str]:
    """
    Upload an archive and return a presigned download URL.

    Returns:
        The URL, or None if S3 is not configured or the upload failed
    """
    if not upload_archive(archive, s3_key):
        return None
    return generate_presigned_url(s3_key, expiration)

