"""
Blob storage for room attachments.

Keys are namespaced by room code (``{code}/...``) so a whole room can be removed
by prefix. Two backends: a local directory (aiofiles) and S3 (aioboto3).
"""
import os
import re
import secrets
import shutil
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import aioboto3
import aiofiles
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .errors import NotFound, StorageError, TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


@dataclass
class BlobInfo:
    key: str
    size: int
    modified_at: datetime  # naive UTC


def room_prefix(room_code: str) -> str:
    return f'{room_code}/'


def sanitize_file_name(file_name: str) -> str:
    name = os.path.basename((file_name or '').replace('\\', '/'))
    name = _UNSAFE_CHARS.sub('_', name).strip('._')
    return name[:120] or 'file'


def make_storage_key(room_code: str, file_name: str, now: datetime) -> str:
    """Unique key for an upload: ``{code}/{epoch_ms}-{token}-{name}``"""
    epoch_ms = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f'{room_prefix(room_code)}{epoch_ms}-{secrets.token_hex(4)}-{sanitize_file_name(file_name)}'


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime and blob mtime uses"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class BlobStore:
    """Interface every backend implements. ``put`` returns the locator to store in metadata."""

    async def put(self, key: str, data: bytes, content_type: str = 'application/octet-stream') -> str:
        raise NotImplementedError

    async def get(self, key: str) -> bytes:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    async def list(self, prefix: str = '') -> List[BlobInfo]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LocalBlobStore(BlobStore):
    """Stores blobs as files below ``root``; key segments map to directories"""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        parts = key.split('/')
        if key.startswith('/') or any(p in ('', '.', '..') for p in parts):
            raise ValidationError(f'Invalid storage key: {key!r}')
        return os.path.join(self.root, *parts)

    async def put(self, key: str, data: bytes, content_type: str = 'application/octet-stream') -> str:
        file_path = self._path(key)
        try:
            os.makedirs(os.path.dirname(file_path), exist_ok=True)
            async with aiofiles.open(file_path, 'wb') as f:
                await f.write(data)
        except OSError as e:
            # Clean up file if it was created
            if os.path.exists(file_path):
                os.remove(file_path)
            raise StorageError(f'Error saving blob {key}: {e}') from e
        return key

    async def get(self, key: str) -> bytes:
        file_path = self._path(key)
        try:
            async with aiofiles.open(file_path, 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            raise NotFound(f'Blob {key} not found')
        except OSError as e:
            raise StorageError(f'Error reading blob {key}: {e}') from e

    async def delete(self, key: str) -> None:
        file_path = self._path(key)
        try:
            os.remove(file_path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f'Error deleting blob {key}: {e}') from e

    async def delete_prefix(self, prefix: str) -> int:
        directory = self._path(prefix.rstrip('/'))
        if not os.path.isdir(directory):
            return 0
        removed = sum(len(files) for _, _, files in os.walk(directory))
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise StorageError(f'Error deleting blobs under {prefix}: {e}') from e
        return removed

    async def list(self, prefix: str = '') -> List[BlobInfo]:
        blobs = []
        for dirpath, _, files in os.walk(self.root):
            for name in files:
                full = os.path.join(dirpath, name)
                key = os.path.relpath(full, self.root).replace(os.sep, '/')
                if not key.startswith(prefix):
                    continue
                try:
                    st = os.stat(full)
                except FileNotFoundError:
                    continue
                modified = datetime.fromtimestamp(st.st_mtime, timezone.utc).replace(tzinfo=None)
                blobs.append(BlobInfo(key=key, size=st.st_size, modified_at=modified))
        return blobs


class S3BlobStore(BlobStore):
    """S3-compatible backend. A client is opened per operation, as aioboto3 recommends for short calls."""

    def __init__(self, bucket: Optional[str], region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None, timeout: float = 30.0):
        if not bucket:
            raise ValueError('Missing AWS_S3_BUCKET configuration')
        self.bucket_name = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.session = aioboto3.Session()
        self.config = Config(
            signature_version='s3v4',
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={'max_attempts': 1},
        )

    def _client(self):
        return self.session.client(
            's3',
            region_name=self.region,
            endpoint_url=self.endpoint_url,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            config=self.config,
        )

    @asynccontextmanager
    async def _errors(self, action: str, key: str):
        try:
            yield
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in ('NoSuchKey', '404', 'NotFound'):
                raise NotFound(f'Blob {key} not found') from e
            raise StorageError(f'Failed to {action} {key}: {code or e}') from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            raise TransientNetworkError(f'Failed to {action} {key}: {e}') from e
        except BotoCoreError as e:
            raise StorageError(f'Failed to {action} {key}: {e}') from e

    async def put(self, key: str, data: bytes, content_type: str = 'application/octet-stream') -> str:
        async with self._errors('upload', key):
            async with self._client() as client:
                await client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    Metadata={'uploaded-by': 'roomshare'},
                )
        return key

    async def get(self, key: str) -> bytes:
        async with self._errors('download', key):
            async with self._client() as client:
                resp = await client.get_object(Bucket=self.bucket_name, Key=key)
                return await resp['Body'].read()

    async def delete(self, key: str) -> None:
        async with self._errors('delete', key):
            async with self._client() as client:
                await client.delete_object(Bucket=self.bucket_name, Key=key)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [b.key for b in await self.list(prefix)]
        async with self._errors('delete', prefix):
            async with self._client() as client:
                for start in range(0, len(keys), 1000):
                    batch = keys[start:start + 1000]
                    await client.delete_objects(
                        Bucket=self.bucket_name,
                        Delete={'Objects': [{'Key': k} for k in batch], 'Quiet': True},
                    )
        return len(keys)

    async def list(self, prefix: str = '') -> List[BlobInfo]:
        blobs = []
        async with self._errors('list', prefix):
            async with self._client() as client:
                paginator = client.get_paginator('list_objects_v2')
                async for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                    for item in page.get('Contents', []):
                        blobs.append(BlobInfo(
                            key=item['Key'],
                            size=item['Size'],
                            modified_at=_naive_utc(item['LastModified']),
                        ))
        return blobs


def create_blob_store(settings) -> BlobStore:
    if settings.blob_backend == 's3':
        logger.info(f"Using S3 blob store bucket={settings.s3_bucket} region={settings.s3_region}")
        return S3BlobStore(
            settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            timeout=settings.blob_timeout_seconds,
        )
    if settings.blob_backend != 'local':
        raise ValueError(f'Unknown BLOB_BACKEND: {settings.blob_backend}')
    logger.info(f"Using local blob store at {settings.blob_dir}")
    return LocalBlobStore(settings.blob_dir)
