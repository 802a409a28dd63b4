"""
Engine settings.

BackupSettings is built from the Flask config mapping once per run and handed
to the storage factory and the orchestrators. Settings can be moved to
another installation as a passphrase-encrypted URI.
"""

import base64
import binascii
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import List, Mapping
from urllib.parse import parse_qs, quote, urlsplit

from diffzip.utils.crypto import DecryptionError, OpenSSLCipher


logger = logging.getLogger(__name__)

SETTINGS_URI_PREFIX = 'diffzip://settings'


class SettingsError(Exception):
    """Raised when settings are invalid or cannot be imported."""
    pass


class AutoBackupType(Enum):
    """Backup style of a pass."""

    FULL = 'full'
    ONLY_NEW = 'only-new'
    ONLY_NEW_AND_EXISTING = 'only-new-and-existing'

    @classmethod
    def parse(cls, value) -> 'AutoBackupType':
        if isinstance(value, cls):
            return value
        if not value:
            return cls.FULL
        try:
            return cls(value)
        except ValueError:
            raise SettingsError(f"Unknown backup type: {value}")

    @property
    def only_new(self) -> bool:
        """Skip files whose mtime is not newer than the recorded one."""
        return self is AutoBackupType.ONLY_NEW

    @property
    def tombstone(self) -> bool:
        """Record files that disappeared from the vault."""
        return self is AutoBackupType.FULL


@dataclass
class BackupSettings:
    backup_destination: str = 'vault'
    backup_folder: str = 'backup'
    backup_folder_external: str = ''
    backup_folder_bucket: str = 'backup'
    restore_folder: str = 'restored'
    max_size_mb: float = 30
    max_files_in_zip: int = 100
    perform_next_backup_on_max_files: bool = True
    include_hidden_folder: bool = False
    ignore_names: List[str] = field(default_factory=lambda: ['node_modules', '.git', '.trash'])
    start_backup_at_launch: bool = False
    start_backup_at_launch_type: str = AutoBackupType.ONLY_NEW_AND_EXISTING.value
    s3_endpoint: str = ''
    s3_access_key: str = ''
    s3_secret_key: str = ''
    s3_bucket: str = 'diffzip'
    s3_region: str = 'us-east-1'
    passphrase_of_zip: str = ''

    @property
    def max_size_bytes(self) -> int:
        """Split size in bytes; 0 means a single piece."""
        if not self.max_size_mb or self.max_size_mb <= 0:
            return 0
        return int(self.max_size_mb * 1024 * 1024)

    @property
    def launch_backup_type(self) -> AutoBackupType:
        return AutoBackupType.parse(self.start_backup_at_launch_type)

    def validate(self):
        """
        Raises:
            SettingsError: If a value is out of range
        """
        if self.backup_destination not in ('vault', 'external', 's3'):
            raise SettingsError(f"Invalid backup destination: {self.backup_destination}")
        if self.backup_destination == 'external' and not self.backup_folder_external:
            raise SettingsError("An external backup folder is required")
        if self.max_size_mb < 0:
            raise SettingsError("Max size must not be negative")
        if self.max_files_in_zip < 0:
            raise SettingsError("Max files per archive must not be negative")
        AutoBackupType.parse(self.start_backup_at_launch_type)

    @classmethod
    def from_config(cls, config: Mapping) -> 'BackupSettings':
        """Build settings from an app.config-style mapping of upper-case keys."""
        values = {}
        for f in fields(cls):
            key = f.name.upper()
            if key in config:
                values[f.name] = config[key]
        settings = cls(**values)
        settings.max_size_mb = float(settings.max_size_mb or 0)
        settings.max_files_in_zip = int(settings.max_files_in_zip or 0)
        settings.ignore_names = list(settings.ignore_names or [])
        return settings

    def to_config(self) -> dict:
        return {key.upper(): value for key, value in asdict(self).items()}


def export_settings(settings: BackupSettings, passphrase: str) -> str:
    """
    Encode settings as an encrypted URI for another installation.

    Args:
        settings: Settings to export
        passphrase: Passphrase protecting the URI

    Returns:
        diffzip://settings?data=... URI
    """
    if not passphrase:
        raise SettingsError("A passphrase is required to export settings")
    payload = json.dumps(asdict(settings)).encode('utf-8')
    encrypted = OpenSSLCipher(passphrase).encrypt(payload)
    data = base64.urlsafe_b64encode(encrypted).decode('ascii')
    return f"{SETTINGS_URI_PREFIX}?data={quote(data)}"


def import_settings(uri: str, passphrase: str) -> BackupSettings:
    """
    Decode settings exported by export_settings.

    Raises:
        SettingsError: If the URI is malformed or the passphrase is wrong
    """
    if not passphrase:
        raise SettingsError("A passphrase is required to import settings")

    parts = urlsplit(uri.strip())
    if f"{parts.scheme}://{parts.netloc}" != SETTINGS_URI_PREFIX:
        raise SettingsError("Not a settings URI")
    data = parse_qs(parts.query).get('data')
    if not data:
        raise SettingsError("Settings URI carries no data")

    try:
        encrypted = base64.urlsafe_b64decode(data[0].encode('ascii'))
        payload = OpenSSLCipher(passphrase).decrypt(encrypted)
        values = json.loads(payload.decode('utf-8'))
    except (binascii.Error, ValueError) as e:
        raise SettingsError(f"Settings URI is corrupt: {e}")
    except DecryptionError as e:
        raise SettingsError(f"Failed to decrypt settings: {e}")

    if not isinstance(values, dict):
        raise SettingsError("Settings URI does not hold a settings object")

    known = {f.name for f in fields(BackupSettings)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")
    settings = BackupSettings(**{k: v for k, v in values.items() if k in known})
    settings.validate()
    return settings
