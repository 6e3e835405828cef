# services/r2_storage.py
"""
Cloudflare R2 object storage through its S3-compatible API
"""

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app

from core.errors import BadRequestError, ConfigurationError, ForbiddenError, ProviderError

logger = logging.getLogger(__name__)

BUCKET_TYPES = ('admin', 'user')
UNSAFE_FILENAME_CHARS = re.compile(r'[^a-zA-Z0-9._-]')


@dataclass
class PresignedUpload:
    upload_url: str
    public_url: str
    object_key: str
    bucket: str
    file_name: str
    file_type: str
    expires_in: int

    def to_dict(self):
        return {
            'uploadUrl': self.upload_url,
            'publicUrl': self.public_url,
            'objectKey': self.object_key,
            'bucket': self.bucket,
            'fileName': self.file_name,
            'fileType': self.file_type,
            'expiresIn': self.expires_in,
        }


def sanitize_filename(file_name: str) -> str:
    return UNSAFE_FILENAME_CHARS.sub('_', file_name)


def build_object_key(file_name: str, bucket_type: str, user_id: str, folder: Optional[str] = None) -> str:
    """``[<user id>/][<folder>/]<ms timestamp>-<8 hex>-<sanitized name>``"""
    folder_path = f"{folder.strip('/')}/" if folder and folder.strip('/') else ''
    name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{sanitize_filename(file_name)}"
    if bucket_type == 'user':
        return f"{user_id}/{folder_path}{name}"
    return f"{folder_path}{name}"


class R2Storage:
    """One client per request; bucket names and public URLs come from config"""

    def __init__(self):
        config = current_app.config
        self.account_id = config.get('R2_ACCOUNT_ID')
        self.buckets = {
            'admin': (config.get('R2_ADMIN_BUCKET'), config.get('R2_ADMIN_PUBLIC_URL')),
            'user': (config.get('R2_USER_BUCKET'), config.get('R2_USER_PUBLIC_URL')),
        }
        self.presign_expiry = config.get('R2_PRESIGN_EXPIRY', 600)
        if not (self.account_id and config.get('R2_ACCESS_KEY_ID') and config.get('R2_SECRET_ACCESS_KEY')):
            raise ConfigurationError('Server configuration error')

        self.client = boto3.client(
            's3',
            region_name='auto',
            endpoint_url=f"https://{self.account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=config['R2_ACCESS_KEY_ID'],
            aws_secret_access_key=config['R2_SECRET_ACCESS_KEY'],
            config=Config(signature_version='s3v4'),
        )

    def _bucket(self, bucket_type: str):
        bucket_name, public_url = self.buckets[bucket_type]
        if not bucket_name or not public_url:
            raise ConfigurationError('Server configuration error')
        return bucket_name, public_url.rstrip('/')

    def public_url(self, bucket_type: str, object_key: str) -> str:
        return f"{self._bucket(bucket_type)[1]}/{object_key}"

    def presign_upload(self, file_name: str, file_type: str, bucket_type: str,
                       user_id: str, folder: Optional[str] = None) -> PresignedUpload:
        bucket_name, public_url = self._bucket(bucket_type)
        object_key = build_object_key(file_name, bucket_type, user_id, folder)

        try:
            upload_url = self.client.generate_presigned_url(
                'put_object',
                Params={'Bucket': bucket_name, 'Key': object_key, 'ContentType': file_type},
                ExpiresIn=self.presign_expiry,
                HttpMethod='PUT',
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to presign upload for {object_key}: {e}")
            raise ProviderError('Failed to generate upload URL')

        logger.info(f"Generated presigned upload URL for {bucket_type}/{object_key}")
        return PresignedUpload(
            upload_url=upload_url,
            public_url=f"{public_url}/{object_key}",
            object_key=object_key,
            bucket=bucket_type,
            file_name=file_name,
            file_type=file_type,
            expires_in=self.presign_expiry,
        )

    def upload_bytes(self, object_key: str, body: bytes, content_type: str,
                     bucket_type: str = 'admin') -> Optional[str]:
        """Upload and return the public URL, or None when R2 refuses"""
        bucket_name, public_url = self._bucket(bucket_type)
        try:
            self.client.put_object(Bucket=bucket_name, Key=object_key, Body=body, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"R2 upload failed for {object_key}: {e}")
            return None
        return f"{public_url}/{object_key}"

    def download_and_upload(self, source_url: str, object_key: str) -> Optional[str]:
        """Copy a remote file into the admin bucket; None on any failure"""
        timeout = current_app.config.get('IMAGE_DOWNLOAD_TIMEOUT', 20)
        try:
            logger.info(f"Downloading {source_url}")
            response = requests.get(source_url, timeout=timeout, allow_redirects=True)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Download failed for {source_url}: {e}")
            return None

        content_type = response.headers.get('Content-Type', 'image/jpeg').split(';')[0]
        logger.info(f"Uploading {len(response.content)} bytes as {object_key}")
        return self.upload_bytes(object_key, response.content, content_type)

    def delete_object(self, object_key: str, bucket_type: str) -> None:
        bucket_name, _ = self._bucket(bucket_type)
        try:
            self.client.delete_object(Bucket=bucket_name, Key=object_key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"R2 delete failed for {object_key}: {e}")
            raise ProviderError('Failed to delete file from storage')
        logger.info(f"File deleted successfully: {object_key}")


def validate_bucket_access(bucket_type: str, user_id: str, admin: bool, object_key: str = None) -> None:
    """Raise when the caller may not use the bucket (or, for deletes, the key)"""
    if bucket_type not in BUCKET_TYPES:
        raise BadRequestError("Invalid bucket type. Must be 'admin' or 'user'")
    if bucket_type == 'admin' and not admin:
        raise ForbiddenError('Admin access required for admin bucket')
    if object_key is not None and bucket_type == 'user' and not admin:
        if not object_key.startswith(f"{user_id}/"):
            raise ForbiddenError('You can only delete your own files')
