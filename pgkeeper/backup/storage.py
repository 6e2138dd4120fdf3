"""
Storage adapters for backup artifacts.

Supports:
- LocalStorage: Store in a local directory
- S3Storage: Upload to AWS S3 or any S3-compatible service (MinIO, Wasabi, B2...)
- WebDAVStorage: Upload to a WebDAV server (Nextcloud, ownCloud, Apache mod_dav...)

Every adapter exposes the same capability set (see StorageAdapter). Operations
report failure by returning False (or an empty list / None) and logging the
cause; they do not raise for backend errors.
"""

import logging
import os
import shutil
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional, Protocol, Tuple
from urllib.parse import quote, unquote, urlparse

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .artifacts import BackupArtifact, BackupError, artifact_from_name, newest_first
from .settings import BackupSettings


logger = logging.getLogger(__name__)


class StorageError(BackupError):
    """Raised when a storage operation fails."""
    pass


class UploadFailed(StorageError):
    """Raised when an artifact could not be stored on a storage."""
    pass


class StorageAdapter(Protocol):
    """Capabilities every backup storage provides."""

    name: str

    def is_available(self) -> bool: ...

    def upload(self, local_path: str, remote_name: str) -> bool: ...

    def download(self, remote_name: str, local_path: str) -> bool: ...

    def delete(self, remote_name: str) -> bool: ...

    def list(self) -> List[BackupArtifact]: ...

    def exists(self, remote_name: str) -> bool: ...

    def get_free_space(self) -> Optional[int]: ...


class LocalStorage:
    """
    Stores artifacts in a local directory.

    Remote names are paths relative to base_path. Listing is recursive so
    artifacts placed in sub directories by hand are still found.
    """

    name = 'local'

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
        """
        self.base_path = Path(base_path)

    def is_available(self) -> bool:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            return os.access(self.base_path, os.W_OK)
        except OSError as e:
            logger.error(f"Local storage not available at {self.base_path}: {e}")
            return False

    def upload(self, local_path: str, remote_name: str) -> bool:
        """
        Copy a file into local storage.

        Args:
            local_path: Path to the file to store
            remote_name: Relative destination path

        Returns:
            True if the copy succeeded
        """
        dest_path = self.base_path / remote_name

        try:
            if not os.path.exists(local_path):
                raise StorageError(f"Source file not found: {local_path}")

            dest_path.parent.mkdir(parents=True, exist_ok=True)
            # Copy under a temporary name so a crash never leaves a truncated artifact
            partial_path = dest_path.with_name(dest_path.name + '.partial')
            shutil.copyfile(local_path, partial_path)
            os.replace(partial_path, dest_path)

            logger.info(f"Stored {remote_name} in local storage ({dest_path})")
            return True

        except (OSError, StorageError) as e:
            logger.error(f"Failed to store {remote_name} locally: {e}")
            return False

    def download(self, remote_name: str, local_path: str) -> bool:
        source_path = self.base_path / remote_name

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source_path, local_path)
            logger.info(f"Fetched {remote_name} from local storage")
            return True
        except OSError as e:
            logger.error(f"Failed to fetch {remote_name} from local storage: {e}")
            return False

    def delete(self, remote_name: str) -> bool:
        full_path = self.base_path / remote_name

        try:
            full_path.unlink()
            logger.info(f"Deleted {remote_name} from local storage")
            return True
        except OSError as e:
            logger.error(f"Failed to delete {remote_name} from local storage: {e}")
            return False

    def list(self) -> List[BackupArtifact]:
        """
        List backup artifacts, newest first.

        Manifests and unrelated files are skipped.
        """
        if not self.base_path.exists():
            return []

        artifacts = []

        try:
            for file_path in self.base_path.rglob('backup-*'):
                if not file_path.is_file():
                    continue

                relative_path = str(file_path.relative_to(self.base_path))
                artifact = artifact_from_name(file_path.name, file_path.stat().st_size, relative_path)
                if artifact is not None:
                    artifacts.append(artifact)

        except OSError as e:
            logger.error(f"Failed to list local backups: {e}")
            return []

        return newest_first(artifacts)

    def exists(self, remote_name: str) -> bool:
        return (self.base_path / remote_name).is_file()

    def get_free_space(self) -> Optional[int]:
        try:
            return shutil.disk_usage(self.base_path).free
        except OSError as e:
            logger.error(f"Failed to get free space for {self.base_path}: {e}")
            return None


class S3Storage:
    """
    Stores artifacts in an S3 bucket under a key prefix.

    Object keys are {path}/{remote_name}.
    """

    name = 's3'

    # Use multipart upload for files larger than 100MB, in 10MB parts
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    PART_SIZE = 10 * 1024 * 1024

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint: Optional[str] = None,
        path: str = ''
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint: Endpoint URL for S3-compatible services (default: AWS)
            path: Key prefix inside the bucket
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = f"{path.strip('/')}/" if path and path.strip('/') else ''

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region,
                endpoint_url=endpoint or None,
                config=BotoConfig(retries={'max_attempts': 3, 'mode': 'standard'})
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, remote_name: str) -> str:
        return f"{self.prefix}{remote_name.lstrip('/')}"

    def is_available(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                logger.error(f"S3 bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                logger.error(f"Access denied to S3 bucket: {self.bucket_name}")
            else:
                logger.error(f"S3 storage not available ({error_code}): {e}")
            return False
        except BotoCoreError as e:
            logger.error(f"S3 storage not available: {e}")
            return False

    def upload(self, local_path: str, remote_name: str) -> bool:
        """
        Upload a file to S3.

        Args:
            local_path: Path to local file
            remote_name: Name relative to the configured prefix

        Returns:
            True if upload succeeded
        """
        s3_key = self._key(remote_name)

        try:
            if not os.path.exists(local_path):
                raise StorageError(f"Local file not found: {local_path}")

            file_size = os.path.getsize(local_path)
            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            logger.info(f"Uploaded {remote_name} to s3://{self.bucket_name}/{s3_key}")
            return True

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 upload of {remote_name} failed ({error_code}): {e}")
        except (BotoCoreError, OSError, StorageError) as e:
            logger.error(f"S3 upload of {remote_name} failed: {e}")

        return False

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                ContentType='application/octet-stream'
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            ContentType='application/octet-stream'
        )
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.PART_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def download(self, remote_name: str, local_path: str) -> bool:
        s3_key = self._key(remote_name)

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=s3_key)

            with open(local_path, 'wb') as f:
                for chunk in response['Body'].iter_chunks(self.PART_SIZE):
                    f.write(chunk)

            logger.info(f"Downloaded s3://{self.bucket_name}/{s3_key}")
            return True

        except (ClientError, BotoCoreError, OSError) as e:
            logger.error(f"S3 download of {remote_name} failed: {e}")
            if os.path.exists(local_path):
                os.remove(local_path)
            return False

    def delete(self, remote_name: str) -> bool:
        s3_key = self._key(remote_name)

        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=s3_key)
            logger.info(f"Deleted s3://{self.bucket_name}/{s3_key}")
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 delete of {remote_name} failed ({error_code}): {e}")
        except BotoCoreError as e:
            logger.error(f"S3 delete of {remote_name} failed: {e}")

        return False

    def list(self) -> List[BackupArtifact]:
        artifacts = []

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    remote_name = obj['Key'][len(self.prefix):]
                    artifact = artifact_from_name(os.path.basename(remote_name), obj['Size'], remote_name)
                    if artifact is not None:
                        artifacts.append(artifact)

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list S3 backups: {e}")
            return []

        return newest_first(artifacts)

    def exists(self, remote_name: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(remote_name))
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code not in ('404', 'NoSuchKey', 'NotFound'):
                logger.warning(f"S3 existence check for {remote_name} failed ({error_code}): {e}")
            return False
        except BotoCoreError as e:
            logger.warning(f"S3 existence check for {remote_name} failed: {e}")
            return False

    def get_free_space(self) -> Optional[int]:
        # Buckets have no meaningful capacity limit
        return None


_DAV_NS = {'d': 'DAV:'}

_PROPFIND_LIST = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:resourcetype/><d:getcontentlength/><d:getlastmodified/></d:prop>
</d:propfind>"""

_PROPFIND_QUOTA = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:quota-available-bytes/></d:prop>
</d:propfind>"""


class WebDAVStorage:
    """
    Stores artifacts on a WebDAV server.

    With nextcloud=True the DAV root is derived from a Nextcloud/ownCloud
    base URL: {url}/remote.php/dav/files/{username}.
    """

    name = 'webdav'

    CHUNK_SIZE = 1024 * 1024

    def __init__(
        self,
        url: str,
        username: str = '',
        password: str = '',
        path: str = '/backups',
        nextcloud: bool = False,
        timeout: float = 60,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize WebDAV storage handler.

        Args:
            url: WebDAV root URL (or Nextcloud base URL when nextcloud=True)
            username: Account name
            password: Password (an app password for Nextcloud)
            path: Directory for backups below the DAV root
            nextcloud: Derive the DAV root from a Nextcloud base URL
            timeout: Per-request timeout in seconds
            session: Optional preconfigured requests session
        """
        base_url = url.rstrip('/')
        if nextcloud:
            base_url = f"{base_url}/remote.php/dav/files/{quote(username)}"

        self.base_url = base_url
        self.path = '/' + path.strip('/') if path.strip('/') else ''
        self.timeout = timeout

        self.session = session or requests.Session()
        if username:
            self.session.auth = (username, password)

    def _url(self, remote_name: str = '') -> str:
        relative = f"{self.path}/{remote_name.lstrip('/')}" if remote_name else self.path
        return f"{self.base_url}{quote(relative)}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.timeout)
        return self.session.request(method, url, **kwargs)

    def _propfind(self, url: str, depth: str, body: bytes) -> requests.Response:
        return self._request(
            'PROPFIND', url, data=body,
            headers={'Depth': depth, 'Content-Type': 'application/xml; charset=utf-8'}
        )

    def _ensure_directory(self, remote_dir: str):
        """Create remote_dir and its parents (MKCOL), ignoring existing ones."""
        current = ''
        for part in [p for p in remote_dir.split('/') if p]:
            current = f"{current}/{part}"
            url = f"{self.base_url}{quote(current)}"
            response = self._propfind(url, '0', _PROPFIND_LIST)
            if response.status_code == 404:
                created = self._request('MKCOL', url)
                # 405: created concurrently by someone else
                if created.status_code not in (201, 405):
                    raise StorageError(f"MKCOL {current} failed with HTTP {created.status_code}")
            elif response.status_code >= 400:
                raise StorageError(f"PROPFIND {current} failed with HTTP {response.status_code}")

    def is_available(self) -> bool:
        try:
            self._ensure_directory(self.path)
            return True
        except (requests.RequestException, StorageError) as e:
            logger.error(f"WebDAV storage not available at {self.base_url}: {e}")
            return False

    def upload(self, local_path: str, remote_name: str) -> bool:
        try:
            if not os.path.exists(local_path):
                raise StorageError(f"Local file not found: {local_path}")

            remote_dir = os.path.dirname(remote_name)
            if remote_dir:
                self._ensure_directory(f"{self.path}/{remote_dir}")

            with open(local_path, 'rb') as f:
                response = self._request(
                    'PUT', self._url(remote_name), data=f,
                    headers={
                        'Content-Type': 'application/octet-stream',
                        'Content-Length': str(os.path.getsize(local_path)),
                    }
                )

            if response.status_code not in (200, 201, 204):
                raise UploadFailed(f"PUT returned HTTP {response.status_code}")

            logger.info(f"Uploaded {remote_name} to WebDAV ({self.base_url})")
            return True

        except (requests.RequestException, OSError, StorageError) as e:
            logger.error(f"WebDAV upload of {remote_name} failed: {e}")
            return False

    def download(self, remote_name: str, local_path: str) -> bool:
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)

            with self._request('GET', self._url(remote_name), stream=True) as response:
                if response.status_code != 200:
                    raise StorageError(f"GET returned HTTP {response.status_code}")

                with open(local_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)

            logger.info(f"Downloaded {remote_name} from WebDAV")
            return True

        except (requests.RequestException, OSError, StorageError) as e:
            logger.error(f"WebDAV download of {remote_name} failed: {e}")
            if os.path.exists(local_path):
                os.remove(local_path)
            return False

    def delete(self, remote_name: str) -> bool:
        try:
            response = self._request('DELETE', self._url(remote_name))
            if response.status_code not in (200, 204):
                raise StorageError(f"DELETE returned HTTP {response.status_code}")

            logger.info(f"Deleted {remote_name} from WebDAV")
            return True

        except (requests.RequestException, StorageError) as e:
            logger.error(f"WebDAV delete of {remote_name} failed: {e}")
            return False

    def list(self) -> List[BackupArtifact]:
        try:
            response = self._propfind(self._url(), '1', _PROPFIND_LIST)
            if response.status_code == 404:
                return []
            if response.status_code != 207:
                raise StorageError(f"PROPFIND returned HTTP {response.status_code}")

            artifacts = []
            for href, size, is_collection in self._parse_listing(response.content):
                if is_collection:
                    continue

                filename = os.path.basename(href.rstrip('/'))
                artifact = artifact_from_name(filename, size, filename)
                if artifact is not None:
                    artifacts.append(artifact)

            return newest_first(artifacts)

        except (requests.RequestException, StorageError, ET.ParseError, ValueError) as e:
            logger.error(f"Failed to list WebDAV backups: {e}")
            return []

    @staticmethod
    def _parse_listing(content: bytes) -> List[Tuple[str, int, bool]]:
        """Extract (href, size, is_collection) from a multistatus body."""
        entries = []
        root = ET.fromstring(content)

        for response in root.findall('d:response', _DAV_NS):
            href = unquote(urlparse(response.findtext('d:href', '', _DAV_NS)).path)
            prop = response.find('d:propstat/d:prop', _DAV_NS)
            if prop is None:
                continue

            is_collection = prop.find('d:resourcetype/d:collection', _DAV_NS) is not None
            size = int(prop.findtext('d:getcontentlength', '0', _DAV_NS) or 0)
            entries.append((href, size, is_collection))

        return entries

    def exists(self, remote_name: str) -> bool:
        try:
            response = self._request('HEAD', self._url(remote_name))
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning(f"WebDAV existence check for {remote_name} failed: {e}")
            return False

    def get_free_space(self) -> Optional[int]:
        """Free space from the RFC 4331 quota property, when the server reports one."""
        try:
            response = self._propfind(self._url(), '0', _PROPFIND_QUOTA)
            if response.status_code != 207:
                return None

            root = ET.fromstring(response.content)
            value = root.findtext('.//d:quota-available-bytes', None, _DAV_NS)
            if value is None or not value.strip():
                return None

            available = int(value)
            # Negative values mean "unknown" or "unlimited"
            return available if available >= 0 else None

        except (requests.RequestException, ET.ParseError, ValueError) as e:
            logger.warning(f"Failed to get free space from WebDAV: {e}")
            return None


def create_storages(settings: BackupSettings) -> Tuple[StorageAdapter, ...]:
    """
    Build the storage adapters enabled in settings.

    Called once at startup; the order is local, s3, webdav.

    Args:
        settings: Backup settings

    Returns:
        Tuple of storage adapters
    """
    storages = []

    if settings.local.enabled:
        storages.append(LocalStorage(settings.local.path))

    if settings.s3.enabled:
        storages.append(S3Storage(
            access_key=settings.s3.access_key,
            secret_key=settings.s3.secret_key,
            bucket_name=settings.s3.bucket,
            region=settings.s3.region,
            endpoint=settings.s3.endpoint,
            path=settings.s3.path,
        ))

    if settings.webdav.enabled:
        storages.append(WebDAVStorage(
            url=settings.webdav.url,
            username=settings.webdav.username,
            password=settings.webdav.password,
            path=settings.webdav.path,
            nextcloud=settings.webdav.nextcloud,
        ))

    logger.info(f"Backup storage adapters initialized: {[s.name for s in storages]}")
    return tuple(storages)
