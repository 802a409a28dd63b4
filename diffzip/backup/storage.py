"""
Storage accessors for the live vault and backup destinations.

Supports:
- VaultStorage: the vault's indexed view (hidden paths invisible, cached reads)
- DirectVaultStorage: raw vault access, hidden paths included
- ExternalStorage: any directory on the local filesystem
- S3Storage: an S3-compatible bucket (flat key space)
- EncryptedStorage: wraps any accessor with passphrase encryption

All accessors take paths relative to their base path.
"""

import logging
import os
import posixpath
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from diffzip.utils.crypto import DecryptionError, OpenSSLCipher
from diffzip.vault import FileStat, Vault, VaultFile, VaultFolder


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class ConfigurationConflict(StorageError):
    """Raised when a path collides with an existing entry of the wrong kind."""
    pass


class UnsupportedOperation(StorageError):
    """Raised when a back end does not offer an operation."""
    pass


class FileType(Enum):
    MISSING = 'missing'
    FILE = 'file'
    FOLDER = 'folder'


def _ignored(path: str, ignore_names: Sequence[str]) -> bool:
    return any(path.endswith(name) for name in ignore_names)


def _relative_to(path: str, base: str, sep: str) -> str:
    if base and path.startswith(base + sep):
        return path[len(base) + len(sep):]
    return path


class StorageAccessor(ABC):
    """
    Uniform byte-level access to one back end, bound to a base path.

    Subclasses implement the raw operations (_read_binary, _write_binary,
    create_folder, check_type, stat, delete); this class adds directory
    materialization on write.
    """

    kind = 'abstract'
    sep = '/'
    supports_folders = True

    def __init__(self, base_path: str = ''):
        self.base_path = base_path.rstrip(self.sep) if base_path else ''

    @property
    def root_path(self) -> str:
        if not self.base_path:
            return ''
        return self.base_path + self.sep

    def full_path(self, path: str) -> str:
        """Join a relative path onto the base path with this back end's separator."""
        relative = path.replace('/', self.sep).lstrip(self.sep)
        return self.root_path + relative

    # -- existence helpers -------------------------------------------------

    def is_folder_exists(self, path: str) -> bool:
        return self.check_type(path) == FileType.FOLDER

    def is_file_exists(self, path: str) -> bool:
        return self.check_type(path) == FileType.FILE

    def is_exists(self, path: str) -> bool:
        return self.check_type(path) != FileType.MISSING

    # -- reads and writes --------------------------------------------------

    def read_binary(self, path: str) -> Optional[bytes]:
        """
        Read a file.

        Returns:
            File content, or None if the path does not exist

        Raises:
            StorageError: If the back end fails to read
        """
        return self._read_binary(self.full_path(path))

    def read_toc(self, path: str) -> Optional[bytes]:
        """Read the version history document; same contract as read_binary."""
        return self.read_binary(path)

    def write_binary(self, path: str, data: bytes) -> bool:
        """
        Write a file, creating parent folders first.

        Returns:
            True on success, False if the back end failed to write

        Raises:
            ConfigurationConflict: If the path or one of its parents exists
                with the wrong type
        """
        full_path = self.full_path(path)
        self.ensure_directory(full_path)
        return self._write_binary(full_path, data)

    def write_toc(self, path: str, data: bytes) -> bool:
        """Write the version history document; same contract as write_binary."""
        return self.write_binary(path, data)

    def normalize_path(self, path: str) -> str:
        """
        Canonical relative form of a path on every back end: '/' separators,
        no empty or '.' segments, no leading or trailing slash ('' for the root).
        """
        normalized = posixpath.normpath(path.replace('\\', '/')).strip('/')
        return '' if normalized == '.' else normalized

    def ensure_directory(self, full_path: str):
        """
        Create every missing parent folder of full_path.

        Raises:
            ConfigurationConflict: If a parent path is an existing file
        """
        elements = full_path.split(self.sep)[:-1]
        current = ''
        for element in elements:
            current += element
            if current:
                file_type = self._check_full_type(current)
                if file_type == FileType.FILE:
                    raise ConfigurationConflict(f"File exists with the same name: {current}")
                if file_type == FileType.MISSING:
                    self.create_folder(current)
            current += self.sep

    def check_type(self, path: str) -> FileType:
        return self._check_full_type(self.full_path(path))

    # -- back end primitives ----------------------------------------------

    @abstractmethod
    def create_folder(self, full_path: str):
        pass

    @abstractmethod
    def _check_full_type(self, full_path: str) -> FileType:
        pass

    @abstractmethod
    def _read_binary(self, full_path: str, prevent_cache: bool = False) -> Optional[bytes]:
        pass

    @abstractmethod
    def _write_binary(self, full_path: str, data: bytes) -> bool:
        pass

    @abstractmethod
    def stat(self, path: str) -> Optional[FileStat]:
        pass

    @abstractmethod
    def delete(self, path: str) -> bool:
        pass

    def list_files(self, ignore_names: Sequence[str] = ()) -> List[str]:
        """
        List every file below the base path, relative to it.

        Args:
            ignore_names: Path suffixes whose files and folders are skipped

        Raises:
            UnsupportedOperation: If the back end cannot enumerate
        """
        raise UnsupportedOperation(f"{self.kind} storage cannot list files")

    def __repr__(self):
        return f'<{self.__class__.__name__} base={self.base_path!r}>'


class VaultStorage(StorageAccessor):
    """Accessor over the vault's indexed view."""

    kind = 'normal'

    def __init__(self, vault: Vault, base_path: str = ''):
        super().__init__(base_path)
        self.vault = vault

    def create_folder(self, full_path: str):
        try:
            self.vault.create_folder(full_path)
        except FileExistsError:
            # Hidden folders are invisible to the index but may exist on disk
            if not self.vault.adapter.full_path(full_path).is_dir():
                raise ConfigurationConflict(f"File exists with the same name: {full_path}")

    def _check_full_type(self, full_path: str) -> FileType:
        entry = self.vault.get_abstract_file_by_path(full_path)
        if entry is None:
            return FileType.MISSING
        if isinstance(entry, VaultFolder):
            return FileType.FOLDER
        return FileType.FILE

    def read_toc(self, path: str) -> Optional[bytes]:
        # The read cache may lag behind writes made through other accessors
        return self._read_binary(self.full_path(path), prevent_cache=True)

    def _read_binary(self, full_path: str, prevent_cache: bool = False) -> Optional[bytes]:
        entry = self.vault.get_abstract_file_by_path(full_path)
        if not isinstance(entry, VaultFile):
            return None
        try:
            return self.vault.read_binary(entry, cached=not prevent_cache)
        except OSError as e:
            raise StorageError(f"Failed to read {full_path}: {e}")

    def _write_binary(self, full_path: str, data: bytes) -> bool:
        entry = self.vault.get_abstract_file_by_path(full_path)
        if isinstance(entry, VaultFolder):
            raise ConfigurationConflict(f"Folder exists with the same name: {full_path}")
        if entry is None and self.vault.adapter.full_path(full_path).is_file():
            # Present on disk but hidden from the index
            entry = VaultFile(full_path, self.vault.adapter.stat(full_path))
        try:
            if entry is None:
                self.vault.create_binary(full_path, data)
            else:
                self.vault.modify_binary(entry, data)
            return True
        except OSError as e:
            logger.error(f"Failed to write {full_path}: {e}")
            return False

    def stat(self, path: str) -> Optional[FileStat]:
        entry = self.vault.get_abstract_file_by_path(self.full_path(path))
        if entry is None:
            return None
        if isinstance(entry, VaultFolder):
            return FileStat(kind='folder', mtime=0, size=0)
        return entry.stat

    def delete(self, path: str) -> bool:
        entry = self.vault.get_abstract_file_by_path(self.full_path(path))
        if not isinstance(entry, VaultFile):
            return False
        try:
            self.vault.delete(entry)
            return True
        except OSError as e:
            logger.error(f"Failed to delete {entry.path}: {e}")
            return False

    def list_files(self, ignore_names: Sequence[str] = ()) -> List[str]:
        prefix = self.root_path
        return [
            _relative_to(f.path, self.base_path, '/')
            for f in self.vault.get_files()
            if f.path.startswith(prefix) and not _ignored(f.path, ignore_names)
        ]


class DirectVaultStorage(StorageAccessor):
    """Accessor over the raw vault adapter; sees hidden paths and never caches."""

    kind = 'direct'

    def __init__(self, vault: Vault, base_path: str = ''):
        super().__init__(base_path)
        self.vault = vault

    @property
    def adapter(self):
        return self.vault.adapter

    def create_folder(self, full_path: str):
        try:
            self.adapter.mkdir(full_path)
        except FileExistsError:
            raise ConfigurationConflict(f"File exists with the same name: {full_path}")

    def _check_full_type(self, full_path: str) -> FileType:
        stat = self.adapter.stat(full_path)
        if stat is None:
            return FileType.MISSING
        if stat.kind == 'folder':
            return FileType.FOLDER
        return FileType.FILE

    def _read_binary(self, full_path: str, prevent_cache: bool = False) -> Optional[bytes]:
        if self._check_full_type(full_path) != FileType.FILE:
            return None
        try:
            return self.adapter.read_binary(full_path)
        except OSError as e:
            raise StorageError(f"Failed to read {full_path}: {e}")

    def _write_binary(self, full_path: str, data: bytes) -> bool:
        if self._check_full_type(full_path) == FileType.FOLDER:
            raise ConfigurationConflict(f"Folder exists with the same name: {full_path}")
        try:
            self.adapter.write_binary(full_path, data)
            return True
        except OSError as e:
            logger.error(f"Failed to write {full_path}: {e}")
            return False

    def stat(self, path: str) -> Optional[FileStat]:
        return self.adapter.stat(self.full_path(path))

    def delete(self, path: str) -> bool:
        full_path = self.full_path(path)
        if self._check_full_type(full_path) != FileType.FILE:
            return False
        try:
            self.adapter.remove(full_path)
            return True
        except OSError as e:
            logger.error(f"Failed to delete {full_path}: {e}")
            return False

    def list_files(self, ignore_names: Sequence[str] = ()) -> List[str]:
        root = self.base_path
        files = []
        pending = [root]
        while pending:
            current = pending.pop()
            try:
                children, folders = self.adapter.list(current)
            except OSError as e:
                raise StorageError(f"Failed to list {current or '/'}: {e}")
            files.extend(c for c in children if not _ignored(c, ignore_names))
            pending.extend(f for f in reversed(folders) if not _ignored(f, ignore_names))
        return sorted(_relative_to(path, root, '/') for path in files)


class ExternalStorage(StorageAccessor):
    """
    Accessor for an arbitrary directory on the local filesystem.

    Uses the OS path separator; base_path is an absolute directory.
    """

    kind = 'external'
    sep = os.sep

    def create_folder(self, full_path: str):
        try:
            os.makedirs(full_path, exist_ok=True)
        except FileExistsError:
            raise ConfigurationConflict(f"File exists with the same name: {full_path}")
        except NotADirectoryError:
            raise ConfigurationConflict(f"A parent of {full_path} is a file")

    def ensure_directory(self, full_path: str):
        parent = os.path.dirname(full_path)
        if parent:
            self.create_folder(parent)

    def _check_full_type(self, full_path: str) -> FileType:
        try:
            if os.path.isdir(full_path):
                return FileType.FOLDER
            if os.path.isfile(full_path):
                return FileType.FILE
        except OSError:
            pass
        return FileType.MISSING

    def _read_binary(self, full_path: str, prevent_cache: bool = False) -> Optional[bytes]:
        try:
            with open(full_path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except IsADirectoryError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {full_path}: {e}")

    def _write_binary(self, full_path: str, data: bytes) -> bool:
        if os.path.isdir(full_path):
            raise ConfigurationConflict(f"Folder exists with the same name: {full_path}")
        try:
            with open(full_path, 'wb') as f:
                f.write(data)
            return True
        except PermissionError as e:
            logger.error(f"Permission denied writing to {full_path}: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to write {full_path}: {e}")
            return False

    def stat(self, path: str) -> Optional[FileStat]:
        full_path = self.full_path(path)
        try:
            st = os.stat(full_path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to stat {full_path}: {e}")
        if os.path.isdir(full_path):
            return FileStat(kind='folder', mtime=int(st.st_mtime * 1000), size=0)
        return FileStat(
            kind='file',
            mtime=int(st.st_mtime * 1000),
            size=st.st_size,
            ctime=int(st.st_ctime * 1000),
        )

    def delete(self, path: str) -> bool:
        full_path = self.full_path(path)
        try:
            if os.path.isfile(full_path):
                os.remove(full_path)
                return True
            return False
        except PermissionError as e:
            logger.error(f"Permission denied deleting {full_path}: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to delete {full_path}: {e}")
            return False

    def list_files(self, ignore_names: Sequence[str] = ()) -> List[str]:
        files = []
        for dirpath, dirnames, filenames in os.walk(self.base_path):
            dirnames[:] = sorted(d for d in dirnames if not _ignored(d, ignore_names))
            for name in filenames:
                relative = os.path.relpath(os.path.join(dirpath, name), self.base_path)
                relative = relative.replace(os.sep, '/')
                if not _ignored(relative, ignore_names):
                    files.append(relative)
        return sorted(files)


class S3Storage(StorageAccessor):
    """
    Accessor for an S3-compatible bucket.

    Keys are {base_path}/{relative path}. The bucket has no folders, so
    folder operations are no-ops and check_type only distinguishes
    FILE from MISSING.
    """

    kind = 's3'
    supports_folders = False

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint: str = None,
        base_path: str = '',
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint: Custom endpoint URL for S3-compatible services
            base_path: Key prefix for every object
        """
        super().__init__(base_path)
        self.bucket_name = bucket_name
        self.region = region or 'us-east-1'
        self.endpoint = endpoint or None

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=self.region,
                endpoint_url=self.endpoint,
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def create_folder(self, full_path: str):
        pass

    def ensure_directory(self, full_path: str):
        pass

    def _check_full_type(self, full_path: str) -> FileType:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=full_path)
            return FileType.FILE
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return FileType.MISSING
            raise StorageError(f"S3 head_object failed for {full_path} ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head_object failed for {full_path}: {e}")

    def _read_binary(self, full_path: str, prevent_cache: bool = False) -> Optional[bytes]:
        params = {'Bucket': self.bucket_name, 'Key': full_path}
        if prevent_cache:
            params['ResponseCacheControl'] = 'no-cache'
        try:
            response = self.s3_client.get_object(**params)
            return response['Body'].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return None
            raise StorageError(f"S3 read failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 read failed: {e}")

    def read_toc(self, path: str) -> Optional[bytes]:
        return self._read_binary(self.full_path(path), prevent_cache=True)

    def _write_binary(self, full_path: str, data: bytes) -> bool:
        try:
            response = self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=full_path,
                Body=data
            )
            status = response.get('ResponseMetadata', {}).get('HTTPStatusCode', 500)
            if status // 100 == 2:
                return True
            logger.error(f"Failed to write {full_path} (response code: {status})")
            return False
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 upload failed ({error_code}): {e}")
            return False
        except BotoCoreError as e:
            logger.error(f"S3 upload failed: {e}")
            return False

    def stat(self, path: str) -> Optional[FileStat]:
        raise UnsupportedOperation("stat is not supported on S3 storage")

    def delete(self, path: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self.full_path(path))
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 delete failed: {e}")
            return False

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if the bucket is reachable, False if the connection works
            but the bucket does not exist

        Raises:
            StorageError: If the connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                return False
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def create_bucket(self):
        """
        Create the configured bucket.

        Raises:
            StorageError: If creation fails
        """
        params = {'Bucket': self.bucket_name}
        if self.region != 'us-east-1':
            params['CreateBucketConfiguration'] = {'LocationConstraint': self.region}
        try:
            self.s3_client.create_bucket(**params)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"Bucket creation failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Bucket creation failed: {e}")

    def __repr__(self):
        return f'<S3Storage bucket={self.bucket_name!r} base={self.base_path!r}>'


class EncryptedStorage(StorageAccessor):
    """
    Transparent passphrase encryption around another accessor.

    Writes are encrypted before reaching the wrapped back end and reads are
    decrypted after it; everything else is delegated unchanged.
    """

    def __init__(self, inner: StorageAccessor, passphrase: str):
        self.inner = inner
        self.cipher = OpenSSLCipher(passphrase)

    # Delegate configuration to the wrapped accessor
    @property
    def kind(self):
        return self.inner.kind

    @property
    def sep(self):
        return self.inner.sep

    @property
    def supports_folders(self):
        return self.inner.supports_folders

    @property
    def base_path(self):
        return self.inner.base_path

    def full_path(self, path: str) -> str:
        return self.inner.full_path(path)

    def _decrypt(self, path: str, data: Optional[bytes]) -> Optional[bytes]:
        if data is None:
            return None
        try:
            return self.cipher.decrypt(data)
        except DecryptionError as e:
            raise StorageError(f"Failed to decrypt {path}: {e}")

    def _encrypt(self, path: str, data: bytes) -> Optional[bytes]:
        try:
            return self.cipher.encrypt(data)
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to encrypt {path}: {e}")
            return None

    def read_binary(self, path: str) -> Optional[bytes]:
        return self._decrypt(path, self.inner.read_binary(path))

    def read_toc(self, path: str) -> Optional[bytes]:
        return self._decrypt(path, self.inner.read_toc(path))

    def write_binary(self, path: str, data: bytes) -> bool:
        content = self._encrypt(path, data)
        if content is None:
            return False
        return self.inner.write_binary(path, content)

    def write_toc(self, path: str, data: bytes) -> bool:
        content = self._encrypt(path, data)
        if content is None:
            return False
        return self.inner.write_toc(path, content)

    def check_type(self, path: str) -> FileType:
        return self.inner.check_type(path)

    def normalize_path(self, path: str) -> str:
        return self.inner.normalize_path(path)

    def ensure_directory(self, full_path: str):
        self.inner.ensure_directory(full_path)

    def create_folder(self, full_path: str):
        self.inner.create_folder(full_path)

    def _check_full_type(self, full_path: str) -> FileType:
        return self.inner._check_full_type(full_path)

    def _read_binary(self, full_path: str, prevent_cache: bool = False) -> Optional[bytes]:
        return self._decrypt(full_path, self.inner._read_binary(full_path, prevent_cache))

    def _write_binary(self, full_path: str, data: bytes) -> bool:
        content = self._encrypt(full_path, data)
        if content is None:
            return False
        return self.inner._write_binary(full_path, content)

    def stat(self, path: str) -> Optional[FileStat]:
        return self.inner.stat(path)

    def delete(self, path: str) -> bool:
        return self.inner.delete(path)

    def __repr__(self):
        return f'<EncryptedStorage {self.inner!r}>'


def create_storage(
    storage_type: str,
    settings,
    vault: Optional[Vault] = None,
    base_path: str = '',
    is_local: bool = False,
) -> StorageAccessor:
    """
    Factory function to create the accessor for a back end.

    Args:
        storage_type: 'normal', 'direct', 'external' or 's3'
        settings: BackupSettings with S3 credentials and passphrase
        vault: Vault instance (required for 'normal' and 'direct')
        base_path: Base path or key prefix
        is_local: True when bound to the live source tree (never encrypted)

    Returns:
        StorageAccessor instance

    Raises:
        ValueError: If storage_type is invalid
    """
    if storage_type in ('normal', 'direct'):
        if vault is None:
            raise ValueError(f"A vault is required for {storage_type} storage")
        cls = VaultStorage if storage_type == 'normal' else DirectVaultStorage
        storage = cls(vault, base_path)
    elif storage_type == 'external':
        storage = ExternalStorage(base_path)
    elif storage_type == 's3':
        storage = S3Storage(
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            bucket_name=settings.s3_bucket,
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
            base_path=base_path,
        )
    else:
        raise ValueError(f"Invalid storage type: {storage_type}")

    if not is_local and settings.passphrase_of_zip:
        return EncryptedStorage(storage, settings.passphrase_of_zip)
    return storage


def get_destination_type(settings) -> str:
    """Map the configured backup destination onto a storage type."""
    destination = settings.backup_destination
    if destination == 'external':
        return 'external'
    if destination == 's3':
        return 's3'
    if destination == 'vault':
        return 'normal'
    raise ValueError(f"Invalid backup destination: {destination}")


def get_destination_storage(settings, vault: Optional[Vault] = None) -> StorageAccessor:
    """Build the destination accessor described by the settings."""
    storage_type = get_destination_type(settings)
    base_path = {
        'normal': settings.backup_folder,
        'external': settings.backup_folder_external,
        's3': settings.backup_folder_bucket,
    }[storage_type]
    return create_storage(storage_type, settings, vault=vault, base_path=base_path)


def get_source_storage(settings, vault: Vault) -> StorageAccessor:
    """Build the accessor for the live vault; hidden paths need the direct adapter."""
    storage_type = 'direct' if settings.include_hidden_folder else 'normal'
    return create_storage(storage_type, settings, vault=vault, is_local=True)
