"""
Unit tests for storage handlers (pgkeeper/backup/storage.py).

Tests LocalStorage, S3Storage and WebDAVStorage against the common
storage adapter contract.
"""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest
import requests

from pgkeeper.backup.settings import S3StorageSettings, WebDAVStorageSettings
from pgkeeper.backup.storage import (
    LocalStorage,
    S3Storage,
    WebDAVStorage,
    create_storages,
)


FULL_NAME = 'backup-full-2024-01-07-020000.sql.gz.enc'
DIFF_NAME = 'backup-differential-2024-01-08-020000.sql.gz.enc'


def response(status_code, content=b''):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = content
    resp.iter_content.return_value = [content] if content else []
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


class TestLocalStorage:
    """Test LocalStorage for filesystem operations."""

    def test_upload_and_list(self, tmp_path):
        source = tmp_path / 'artifact'
        source.write_bytes(b'x' * 42)
        storage = LocalStorage(str(tmp_path / 'backups'))

        assert storage.upload(str(source), FULL_NAME) is True
        assert storage.upload(str(source), DIFF_NAME) is True

        backups = storage.list()
        assert [b.filename for b in backups] == [DIFF_NAME, FULL_NAME]
        assert backups[0].type == 'differential'
        assert backups[0].size == 42

    def test_upload_missing_source_returns_false(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'backups'))

        assert storage.upload(str(tmp_path / 'missing'), FULL_NAME) is False

    def test_list_skips_manifests_and_unrelated_files(self, tmp_path):
        base = tmp_path / 'backups'
        base.mkdir()
        (base / FULL_NAME).write_bytes(b'data')
        (base / 'backup-full-2024-01-07-020000.manifest.json').write_text('{}')
        (base / 'README.txt').write_text('hello')

        assert [b.filename for b in LocalStorage(str(base)).list()] == [FULL_NAME]

    def test_list_is_recursive(self, tmp_path):
        base = tmp_path / 'backups'
        (base / '2024').mkdir(parents=True)
        (base / '2024' / FULL_NAME).write_bytes(b'data')

        backups = LocalStorage(str(base)).list()

        assert backups[0].path == f'2024/{FULL_NAME}'

    def test_list_missing_directory_is_empty(self, tmp_path):
        assert LocalStorage(str(tmp_path / 'nowhere')).list() == []

    def test_download_exists_delete(self, tmp_path):
        base = tmp_path / 'backups'
        base.mkdir()
        (base / FULL_NAME).write_bytes(b'payload')
        storage = LocalStorage(str(base))

        assert storage.exists(FULL_NAME)
        assert storage.download(FULL_NAME, str(tmp_path / 'restore' / FULL_NAME))
        assert (tmp_path / 'restore' / FULL_NAME).read_bytes() == b'payload'

        assert storage.delete(FULL_NAME)
        assert not storage.exists(FULL_NAME)
        assert storage.delete(FULL_NAME) is False

    def test_available_and_free_space(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'backups'))

        assert storage.is_available() is True
        assert storage.get_free_space() > 0


class TestS3Storage:
    """Test S3Storage for AWS S3 operations."""

    def make_storage(self, bucket='test-bucket'):
        return S3Storage(
            access_key='test_access_key',
            secret_key='test_secret_key',
            bucket_name=bucket,
            region='us-east-1',
            path='backups'
        )

    def test_upload_uses_prefix(self, mock_s3, tmp_path):
        source = tmp_path / FULL_NAME
        source.write_bytes(b'test data' * 100)
        storage = self.make_storage()

        assert storage.upload(str(source), FULL_NAME) is True

        obj = mock_s3.Object('test-bucket', f'backups/{FULL_NAME}')
        assert obj.content_length == 900

    def test_list_within_prefix_newest_first(self, mock_s3):
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key=f'backups/{FULL_NAME}', Body=b'full')
        bucket.put_object(Key=f'backups/{DIFF_NAME}', Body=b'diff!')
        bucket.put_object(Key='backups/backup-full-2024-01-07-020000.manifest.json', Body=b'{}')
        bucket.put_object(Key=f'other/{FULL_NAME}', Body=b'elsewhere')

        backups = self.make_storage().list()

        assert [b.filename for b in backups] == [DIFF_NAME, FULL_NAME]
        assert backups[0].size == 5
        assert backups[1].path == FULL_NAME

    def test_download_exists_delete(self, mock_s3, tmp_path):
        mock_s3.Bucket('test-bucket').put_object(Key=f'backups/{FULL_NAME}', Body=b'payload')
        storage = self.make_storage()

        assert storage.exists(FULL_NAME) is True
        assert storage.download(FULL_NAME, str(tmp_path / 'out')) is True
        assert (tmp_path / 'out').read_bytes() == b'payload'

        assert storage.delete(FULL_NAME) is True
        assert storage.exists(FULL_NAME) is False

    def test_download_missing_returns_false(self, mock_s3, tmp_path):
        assert self.make_storage().download(FULL_NAME, str(tmp_path / 'out')) is False
        assert not (tmp_path / 'out').exists()

    def test_availability(self, mock_s3):
        assert self.make_storage().is_available() is True
        assert self.make_storage('missing-bucket').is_available() is False

    def test_no_free_space_reported(self, mock_s3):
        assert self.make_storage().get_free_space() is None

    def test_multipart_upload_for_large_files(self, mock_s3, tmp_path, monkeypatch):
        monkeypatch.setattr(S3Storage, 'MULTIPART_THRESHOLD', 1024)
        monkeypatch.setattr(S3Storage, 'PART_SIZE', 5 * 1024 * 1024)
        source = tmp_path / FULL_NAME
        source.write_bytes(b'z' * (6 * 1024 * 1024))

        assert self.make_storage().upload(str(source), FULL_NAME) is True

        obj = mock_s3.Object('test-bucket', f'backups/{FULL_NAME}')
        assert obj.content_length == 6 * 1024 * 1024


MULTISTATUS = f"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/dav/backups/</d:href>
    <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/backups/{FULL_NAME}</d:href>
    <d:propstat><d:prop><d:resourcetype/><d:getcontentlength>120</d:getcontentlength></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/backups/{DIFF_NAME}</d:href>
    <d:propstat><d:prop><d:resourcetype/><d:getcontentlength>30</d:getcontentlength></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/backups/backup-full-2024-01-07-020000.manifest.json</d:href>
    <d:propstat><d:prop><d:resourcetype/><d:getcontentlength>80</d:getcontentlength></d:prop></d:propstat>
  </d:response>
</d:multistatus>""".encode()

QUOTA = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/dav/backups/</d:href>
    <d:propstat><d:prop><d:quota-available-bytes>7000000000</d:quota-available-bytes></d:prop></d:propstat>
  </d:response>
</d:multistatus>"""


class TestWebDAVStorage:
    """Test WebDAVStorage with a mocked requests session."""

    def make_storage(self, session, **kwargs):
        return WebDAVStorage('https://dav.example.com/dav', 'user', 'pass', session=session, **kwargs)

    def test_nextcloud_root(self):
        storage = WebDAVStorage('https://cloud.example.com/', 'alice', 'pw', nextcloud=True, session=MagicMock())

        assert storage._url(FULL_NAME) == f'https://cloud.example.com/remote.php/dav/files/alice/backups/{FULL_NAME}'

    def test_upload_puts_file(self, tmp_path):
        session = MagicMock()
        session.request.return_value = response(201)
        source = tmp_path / FULL_NAME
        source.write_bytes(b'data')

        assert self.make_storage(session).upload(str(source), FULL_NAME) is True

        method, url = session.request.call_args[0]
        assert method == 'PUT'
        assert url == f'https://dav.example.com/dav/backups/{FULL_NAME}'

    def test_upload_rejected_status_returns_false(self, tmp_path):
        session = MagicMock()
        session.request.return_value = response(507)
        source = tmp_path / FULL_NAME
        source.write_bytes(b'data')

        assert self.make_storage(session).upload(str(source), FULL_NAME) is False

    def test_upload_connection_error_returns_false(self, tmp_path):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError('refused')
        source = tmp_path / FULL_NAME
        source.write_bytes(b'data')

        assert self.make_storage(session).upload(str(source), FULL_NAME) is False

    def test_list_parses_multistatus(self):
        session = MagicMock()
        session.request.return_value = response(207, MULTISTATUS)

        backups = self.make_storage(session).list()

        assert [b.filename for b in backups] == [DIFF_NAME, FULL_NAME]
        assert backups[1].size == 120
        method, _ = session.request.call_args[0]
        assert method == 'PROPFIND'
        assert session.request.call_args[1]['headers']['Depth'] == '1'

    def test_list_missing_directory_is_empty(self):
        session = MagicMock()
        session.request.return_value = response(404)

        assert self.make_storage(session).list() == []

    def test_list_non_numeric_length_is_empty(self):
        session = MagicMock()
        session.request.return_value = response(207, MULTISTATUS.replace(b'>120<', b'>unknown<'))

        assert self.make_storage(session).list() == []

    def test_is_available_creates_directory(self):
        session = MagicMock()
        session.request.side_effect = [response(404), response(201)]

        assert self.make_storage(session).is_available() is True

        methods = [c[0][0] for c in session.request.call_args_list]
        assert methods == ['PROPFIND', 'MKCOL']

    def test_is_available_false_on_auth_error(self):
        session = MagicMock()
        session.request.return_value = response(401)

        assert self.make_storage(session).is_available() is False

    def test_download(self, tmp_path):
        session = MagicMock()
        session.request.return_value = response(200, b'payload')

        assert self.make_storage(session).download(FULL_NAME, str(tmp_path / 'out')) is True
        assert (tmp_path / 'out').read_bytes() == b'payload'

    def test_delete_and_exists(self):
        session = MagicMock()
        session.request.side_effect = [response(204), response(404)]
        storage = self.make_storage(session)

        assert storage.delete(FULL_NAME) is True
        assert storage.exists(FULL_NAME) is False

    def test_free_space_from_quota(self):
        session = MagicMock()
        session.request.return_value = response(207, QUOTA)

        assert self.make_storage(session).get_free_space() == 7000000000


class TestCreateStorages:
    """Test the storage registry built from settings."""

    def test_local_only_by_default(self, backup_settings):
        storages = create_storages(backup_settings)

        assert [s.name for s in storages] == ['local']

    def test_all_enabled_in_fixed_order(self, backup_settings, mock_s3):
        settings = replace(
            backup_settings,
            s3=S3StorageSettings(enabled=True, bucket='test-bucket', access_key='a', secret_key='b'),
            webdav=WebDAVStorageSettings(enabled=True, url='https://dav.example.com', username='u', password='p'),
        )

        storages = create_storages(settings)

        assert [s.name for s in storages] == ['local', 's3', 'webdav']
        assert storages[1].prefix == 'backups/'
