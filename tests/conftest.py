"""
Shared pytest fixtures for DiffZip tests.

This module provides fixtures for:
- Flask app and test client
- Temporary vaults with sample files
- Engine settings and storage accessors
- Mock fixtures for external services (S3, scheduler)
"""

import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from diffzip import create_app
from diffzip.backup.executor import BackupExecutor
from diffzip.backup.sources import create_source
from diffzip.backup.storage import get_destination_storage, get_source_storage
from diffzip.settings import AutoBackupType, BackupSettings
from diffzip.vault import Vault


def set_mtime(path, epoch_ms):
    """Set a file's modification time in epoch milliseconds."""
    os.utime(path, (epoch_ms / 1000, epoch_ms / 1000))


class StepClock:
    """Returns pass times one minute apart, starting at a fixed local time."""

    def __init__(self, start=datetime(2024, 1, 5, 1, 0, 0)):
        self.current = start

    def __call__(self):
        now = self.current
        self.current = datetime.fromtimestamp(now.timestamp() + 60)
        return now


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    The vault and logs live under tmp_path; no scheduler is started.
    """
    app = create_app('testing', overrides={
        'DATA_DIR': str(tmp_path / 'data'),
        'VAULT_PATH': str(tmp_path / 'vault'),
        'MAX_SIZE_MB': 0,
    })

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def vault_root(tmp_path):
    root = tmp_path / 'vault'
    root.mkdir()
    return root


@pytest.fixture(scope='function')
def vault(vault_root):
    return Vault(vault_root)


@pytest.fixture(scope='function')
def sample_vault(vault_root, vault):
    """
    Vault with a few visible files and one hidden folder.

    Creates:
    - A.md (500 bytes)
    - B.md (10 bytes)
    - notes/c.txt
    - .hidden/secret.txt (only seen with hidden inclusion)
    """
    (vault_root / 'A.md').write_bytes(b'a' * 500)
    (vault_root / 'B.md').write_bytes(b'b' * 10)
    (vault_root / 'notes').mkdir()
    (vault_root / 'notes' / 'c.txt').write_text('Nested note')
    (vault_root / '.hidden').mkdir()
    (vault_root / '.hidden' / 'secret.txt').write_text('hidden content')

    set_mtime(vault_root / 'A.md', 1_700_000_000_000)
    set_mtime(vault_root / 'B.md', 1_700_000_000_000)
    set_mtime(vault_root / 'notes' / 'c.txt', 1_700_000_000_000)
    return vault


@pytest.fixture(scope='function')
def settings():
    """Settings with the destination inside the vault and no limits."""
    return BackupSettings(
        backup_destination='vault',
        backup_folder='backup',
        restore_folder='restored',
        max_size_mb=0,
        max_files_in_zip=0,
    )


@pytest.fixture(scope='function')
def make_executor(vault, settings):
    """
    Build a BackupExecutor over the test vault.

    Accepts the same keyword arguments as BackupExecutor plus a settings
    override.
    """
    clock = StepClock()

    def factory(backup_type=AutoBackupType.FULL, settings_override=None, destination=None, **kwargs):
        current = settings_override or settings
        source_storage = get_source_storage(current, vault)
        dest = destination or get_destination_storage(current, vault)
        return BackupExecutor(
            current,
            create_source(current, source_storage),
            source_storage,
            dest,
            backup_type=backup_type,
            clock=kwargs.pop('clock', clock),
            **kwargs
        )

    return factory


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('diffzip.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
