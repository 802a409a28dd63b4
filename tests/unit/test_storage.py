"""
Unit tests for storage accessors (diffzip/backup/storage.py).

Tests vault, direct, external, S3 and encrypted accessors plus the
factory functions.
"""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from diffzip.backup.storage import (
    ConfigurationConflict,
    DirectVaultStorage,
    EncryptedStorage,
    ExternalStorage,
    FileType,
    S3Storage,
    StorageError,
    UnsupportedOperation,
    VaultStorage,
    create_storage,
    get_destination_storage,
    get_destination_type,
    get_source_storage,
)
from diffzip.utils.crypto import MAGIC


class TestVaultStorage:
    """Test the indexed vault accessor."""

    def test_write_creates_parent_folders(self, vault, vault_root):
        storage = VaultStorage(vault, 'backup')

        assert storage.write_binary('2024/x.zip', b'data') is True

        assert (vault_root / 'backup' / '2024' / 'x.zip').read_bytes() == b'data'
        assert storage.check_type('2024') == FileType.FOLDER
        assert storage.check_type('2024/x.zip') == FileType.FILE

    def test_overwrite_existing_file(self, sample_vault, vault_root):
        storage = VaultStorage(sample_vault)

        storage.write_binary('B.md', b'replaced')

        assert (vault_root / 'B.md').read_bytes() == b'replaced'

    def test_read_missing_returns_none(self, vault):
        assert VaultStorage(vault).read_binary('nothing.md') is None

    def test_write_onto_folder_conflicts(self, sample_vault):
        with pytest.raises(ConfigurationConflict):
            VaultStorage(sample_vault).write_binary('notes', b'x')

    def test_parent_is_file_conflicts(self, sample_vault):
        with pytest.raises(ConfigurationConflict):
            VaultStorage(sample_vault).write_binary('A.md/inner.txt', b'x')

    def test_hidden_paths_are_invisible(self, sample_vault):
        storage = VaultStorage(sample_vault)

        assert storage.check_type('.hidden/secret.txt') == FileType.MISSING
        assert storage.read_binary('.hidden/secret.txt') is None

    def test_hidden_file_is_overwritten_in_place(self, sample_vault, vault_root):
        VaultStorage(sample_vault).write_binary('.hidden/secret.txt', b'new secret')

        assert (vault_root / '.hidden' / 'secret.txt').read_bytes() == b'new secret'

    def test_read_toc_bypasses_cache(self, sample_vault):
        storage = VaultStorage(sample_vault)

        with patch.object(sample_vault, 'read_binary', wraps=sample_vault.read_binary) as read:
            storage.read_toc('B.md')

        assert read.call_args.kwargs['cached'] is False

    def test_stat(self, sample_vault):
        storage = VaultStorage(sample_vault)

        assert storage.stat('A.md').size == 500
        assert storage.stat('notes').kind == 'folder'
        assert storage.stat('missing') is None

    def test_delete(self, sample_vault, vault_root):
        storage = VaultStorage(sample_vault)

        assert storage.delete('B.md') is True
        assert storage.delete('B.md') is False
        assert not (vault_root / 'B.md').exists()

    def test_list_files_relative_to_base(self, vault):
        storage = VaultStorage(vault, 'backup')
        storage.write_binary('one.zip', b'1')
        storage.write_binary('sub/two.zip', b'2')
        VaultStorage(vault).write_binary('outside.md', b'3')

        assert storage.list_files() == ['one.zip', 'sub/two.zip']


class TestDirectVaultStorage:
    """Test the raw vault accessor."""

    def test_sees_hidden_paths(self, sample_vault):
        storage = DirectVaultStorage(sample_vault)

        assert storage.check_type('.hidden') == FileType.FOLDER
        assert storage.read_binary('.hidden/secret.txt') == b'hidden content'

    def test_list_files_skips_ignored_names(self, sample_vault, vault_root):
        (vault_root / 'node_modules').mkdir()
        (vault_root / 'node_modules' / 'pkg.js').write_text('x')
        (vault_root / 'notes' / 'skip.tmp').write_text('x')

        files = DirectVaultStorage(sample_vault).list_files(['node_modules', '.tmp'])

        assert files == ['.hidden/secret.txt', 'A.md', 'B.md', 'notes/c.txt']

    def test_write_into_hidden_folder(self, vault, vault_root):
        storage = DirectVaultStorage(vault)

        storage.write_binary('.config/app.json', b'{}')

        assert (vault_root / '.config' / 'app.json').read_bytes() == b'{}'

    def test_parent_is_file_conflicts(self, sample_vault):
        with pytest.raises(ConfigurationConflict):
            DirectVaultStorage(sample_vault).write_binary('A.md/x', b'x')

    def test_delete_only_files(self, sample_vault):
        storage = DirectVaultStorage(sample_vault)

        assert storage.delete('notes') is False
        assert storage.delete('.hidden/secret.txt') is True


class TestExternalStorage:
    """Test the local directory accessor."""

    def test_uses_os_separator(self, tmp_path):
        storage = ExternalStorage(str(tmp_path))

        assert storage.full_path('a/b.zip') == str(tmp_path) + os.sep + 'a' + os.sep + 'b.zip'

    def test_write_and_read(self, tmp_path):
        storage = ExternalStorage(str(tmp_path / 'ext'))

        assert storage.write_binary('deep/x.zip', b'payload') is True
        assert storage.read_binary('deep/x.zip') == b'payload'
        assert storage.check_type('deep') == FileType.FOLDER
        assert storage.read_binary('nothing') is None

    def test_parent_is_file_conflicts(self, tmp_path):
        (tmp_path / 'blocker').write_bytes(b'x')
        storage = ExternalStorage(str(tmp_path))

        with pytest.raises(ConfigurationConflict):
            storage.write_binary('blocker/x.zip', b'x')

    def test_write_onto_folder_conflicts(self, tmp_path):
        (tmp_path / 'folder').mkdir()

        with pytest.raises(ConfigurationConflict):
            ExternalStorage(str(tmp_path)).write_binary('folder', b'x')

    def test_stat_and_delete(self, tmp_path):
        storage = ExternalStorage(str(tmp_path))
        storage.write_binary('x.bin', b'12345')

        assert storage.stat('x.bin').size == 5
        assert storage.stat('missing') is None
        assert storage.delete('x.bin') is True
        assert storage.delete('x.bin') is False

    def test_list_files(self, tmp_path):
        storage = ExternalStorage(str(tmp_path))
        storage.write_binary('a.txt', b'a')
        storage.write_binary('sub/b.txt', b'b')
        storage.write_binary('node_modules/c.js', b'c')

        assert storage.list_files(['node_modules']) == ['a.txt', 'sub/b.txt']


class TestS3Storage:
    """Test the S3 accessor against moto."""

    def _storage(self, bucket='test-bucket'):
        return S3Storage(
            access_key='test',
            secret_key='test',
            bucket_name=bucket,
            region='us-east-1',
            base_path='backups',
        )

    def test_write_uses_prefixed_key(self, mock_s3):
        storage = self._storage()

        assert storage.write_binary('x.zip', b'zipdata') is True

        body = mock_s3.Object('test-bucket', 'backups/x.zip').get()['Body'].read()
        assert body == b'zipdata'

    def test_read_and_check_type(self, mock_s3):
        storage = self._storage()
        storage.write_binary('x.zip', b'zipdata')

        assert storage.read_binary('x.zip') == b'zipdata'
        assert storage.check_type('x.zip') == FileType.FILE
        assert storage.check_type('y.zip') == FileType.MISSING

    def test_read_missing_returns_none(self, mock_s3):
        assert self._storage().read_binary('nothing.zip') is None

    def test_check_type_server_error_raises(self, mock_s3):
        storage = self._storage()
        error = ClientError({'Error': {'Code': '500', 'Message': 'Internal Error'}}, 'HeadObject')

        with patch.object(storage.s3_client, 'head_object', side_effect=error):
            with pytest.raises(StorageError, match='500'):
                storage.is_exists('x.zip')

    def test_check_type_access_denied_raises(self, mock_s3):
        storage = self._storage()
        error = ClientError({'Error': {'Code': '403', 'Message': 'Forbidden'}}, 'HeadObject')

        with patch.object(storage.s3_client, 'head_object', side_effect=error):
            with pytest.raises(StorageError):
                storage.check_type('x.zip')

    def test_check_type_network_error_raises(self, mock_s3):
        storage = self._storage()

        with patch.object(storage.s3_client, 'head_object',
                          side_effect=EndpointConnectionError(endpoint_url='http://s3.invalid')):
            with pytest.raises(StorageError):
                storage.check_type('x.zip')

    def test_read_toc(self, mock_s3):
        storage = self._storage()
        storage.write_toc('backupinfo.md', b'toc')

        assert storage.read_toc('backupinfo.md') == b'toc'

    def test_folders_are_noops(self, mock_s3):
        storage = self._storage()

        storage.ensure_directory('backups/a/b')
        storage.create_folder('backups/a')

        assert storage.supports_folders is False

    def test_stat_unsupported(self, mock_s3):
        with pytest.raises(UnsupportedOperation):
            self._storage().stat('x.zip')

    def test_list_files_unsupported(self, mock_s3):
        with pytest.raises(UnsupportedOperation):
            self._storage().list_files()

    def test_delete(self, mock_s3):
        storage = self._storage()
        storage.write_binary('x.zip', b'zipdata')

        assert storage.delete('x.zip') is True
        assert storage.check_type('x.zip') == FileType.MISSING

    def test_connection_success(self, mock_s3):
        assert self._storage().test_connection() is True

    def test_connection_missing_bucket(self, mock_s3):
        assert self._storage('no-such-bucket').test_connection() is False

    def test_create_bucket(self, mock_s3):
        storage = self._storage('new-bucket')

        storage.create_bucket()

        assert storage.test_connection() is True

    def test_create_existing_bucket_fails(self, mock_s3):
        # Outside us-east-1 re-creating an owned bucket is an error
        storage = S3Storage('test', 'test', 'eu-bucket', region='eu-west-1')
        storage.create_bucket()

        with pytest.raises(StorageError):
            storage.create_bucket()


class TestNormalizePath:
    """Test that every accessor normalizes relative paths the same way."""

    @pytest.fixture(params=['vault', 'direct', 'external', 'encrypted'])
    def storage(self, request, vault, tmp_path):
        if request.param == 'vault':
            return VaultStorage(vault, 'backup')
        if request.param == 'direct':
            return DirectVaultStorage(vault)
        if request.param == 'external':
            return ExternalStorage(str(tmp_path / 'ext'))
        return EncryptedStorage(ExternalStorage(str(tmp_path / 'ext')), 'secret')

    @pytest.mark.parametrize('path,expected', [
        ('', ''),
        ('.', ''),
        ('/', ''),
        ('a/b.md', 'a/b.md'),
        ('a\\b.md', 'a/b.md'),
        ('/notes//today/', 'notes/today'),
        ('./notes/./a.md', 'notes/a.md'),
        ('notes/old/../a.md', 'notes/a.md'),
        ('notes/*', 'notes/*'),
    ])
    def test_normalize(self, storage, path, expected):
        assert storage.normalize_path(path) == expected

    def test_s3_matches_filesystem(self, mock_s3, tmp_path):
        s3 = S3Storage('test', 'test', 'test-bucket', region='us-east-1', base_path='backups')
        external = ExternalStorage(str(tmp_path))

        for path in ('', 'a\\b.md', '/x//y/'):
            assert s3.normalize_path(path) == external.normalize_path(path)


class TestEncryptedStorage:
    """Test transparent passphrase encryption."""

    def test_written_bytes_are_encrypted(self, vault, vault_root):
        storage = EncryptedStorage(DirectVaultStorage(vault, 'backup'), 'secret')

        storage.write_binary('x.zip', b'plain archive')

        raw = (vault_root / 'backup' / 'x.zip').read_bytes()
        assert raw.startswith(MAGIC)
        assert b'plain archive' not in raw

    def test_read_decrypts(self, vault):
        storage = EncryptedStorage(DirectVaultStorage(vault, 'backup'), 'secret')
        storage.write_binary('x.zip', b'plain archive')
        storage.write_toc('backupinfo.md', b'toc')

        assert storage.read_binary('x.zip') == b'plain archive'
        assert storage.read_toc('backupinfo.md') == b'toc'

    def test_missing_stays_none(self, vault):
        storage = EncryptedStorage(DirectVaultStorage(vault), 'secret')

        assert storage.read_binary('missing.zip') is None

    def test_wrong_passphrase_raises(self, vault):
        EncryptedStorage(DirectVaultStorage(vault), 'secret').write_binary('x.zip', b'data')

        with pytest.raises(StorageError):
            EncryptedStorage(DirectVaultStorage(vault), 'other').read_binary('x.zip')

    def test_delegates_configuration(self, vault):
        inner = VaultStorage(vault, 'backup')
        storage = EncryptedStorage(inner, 'secret')

        assert storage.kind == 'normal'
        assert storage.base_path == 'backup'
        assert storage.full_path('x.zip') == 'backup/x.zip'


class TestFactories:
    """Test storage factory functions."""

    def test_destination_types(self, settings):
        assert get_destination_type(settings) == 'normal'
        assert get_destination_type(replace(settings, backup_destination='external')) == 'external'
        assert get_destination_type(replace(settings, backup_destination='s3')) == 's3'

    def test_invalid_destination(self, settings):
        with pytest.raises(ValueError):
            get_destination_type(replace(settings, backup_destination='ftp'))

    def test_invalid_storage_type(self, settings):
        with pytest.raises(ValueError, match='Invalid storage type'):
            create_storage('ftp', settings)

    def test_vault_storage_requires_vault(self, settings):
        with pytest.raises(ValueError):
            create_storage('normal', settings)

    def test_vault_destination(self, settings, vault):
        storage = get_destination_storage(settings, vault)

        assert isinstance(storage, VaultStorage)
        assert storage.base_path == 'backup'

    def test_external_destination(self, settings, tmp_path):
        current = replace(settings, backup_destination='external', backup_folder_external=str(tmp_path))

        storage = get_destination_storage(current)

        assert isinstance(storage, ExternalStorage)
        assert storage.base_path == str(tmp_path)

    def test_s3_destination(self, settings, mock_s3):
        current = replace(
            settings,
            backup_destination='s3',
            backup_folder_bucket='vault-backups',
            s3_access_key='test',
            s3_secret_key='test',
            s3_bucket='test-bucket',
        )

        storage = get_destination_storage(current)

        assert isinstance(storage, S3Storage)
        assert storage.full_path('x.zip') == 'vault-backups/x.zip'

    def test_passphrase_wraps_destination_only(self, settings, vault):
        current = replace(settings, passphrase_of_zip='secret')

        assert isinstance(get_destination_storage(current, vault), EncryptedStorage)
        assert isinstance(get_source_storage(current, vault), VaultStorage)

    def test_hidden_inclusion_selects_direct_source(self, settings, vault):
        current = replace(settings, include_hidden_folder=True)

        assert isinstance(get_source_storage(current, vault), DirectVaultStorage)
