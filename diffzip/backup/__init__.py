"""
Backup module for DiffZip.

This module handles the core backup functionality including:
- Storage accessors (vault, external folder, S3, encryption)
- Archive writing and streaming extraction
- Vault enumeration
- Differential backup passes
- Restore of files, folders and whole vaults
"""

from .executor import BackupExecutor, BackupError, execute_backup
from .restore import RestoreExecutor, RestoreError, FolderBrowser
from .sources import VaultSource
from .compression import ArchiveWriter, ArchiveReader
from .storage import create_storage, get_destination_storage, get_source_storage

__all__ = [
    'BackupExecutor',
    'BackupError',
    'execute_backup',
    'RestoreExecutor',
    'RestoreError',
    'FolderBrowser',
    'VaultSource',
    'ArchiveWriter',
    'ArchiveReader',
    'create_storage',
    'get_destination_storage',
    'get_source_storage',
]
