"""
Live-tree enumeration for backup passes.

VaultSource lists every file a pass should consider, relative to the vault
root, and filters out the backup destination, the restore staging folder and
the vault's trash.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from .storage import StorageAccessor, StorageError


logger = logging.getLogger(__name__)

TRASH_FOLDER = '.trash'


class SourceError(Exception):
    """Raised when the live tree cannot be enumerated."""
    pass


class VaultSource:
    """
    Enumerates the files of the live vault through a source accessor.

    With the indexed accessor, hidden paths never appear. With the direct
    accessor every path is walked, except those ending in one of ignore_names.
    """

    def __init__(
        self,
        storage: StorageAccessor,
        excluded_folders: Iterable[str] = (),
        ignore_names: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the source.

        Args:
            storage: Accessor bound to the vault root
            excluded_folders: Vault folders whose contents are never backed up
            ignore_names: Path suffixes skipped while walking hidden paths
        """
        self.storage = storage
        self.ignore_names = list(ignore_names or [])
        normalized = (storage.normalize_path(folder) for folder in excluded_folders if folder)
        self.excluded_prefixes = [folder + '/' for folder in normalized if folder]
        self.excluded_prefixes.append(TRASH_FOLDER + '/')

    def _should_exclude(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.excluded_prefixes)

    def list_files(self) -> List[str]:
        """
        List candidate files for a pass.

        Returns:
            Sorted vault-relative paths

        Raises:
            SourceError: If the vault cannot be listed
        """
        try:
            files = self.storage.list_files(self.ignore_names)
        except StorageError as e:
            raise SourceError(f"Failed to enumerate vault: {e}")

        result = [path for path in files if not self._should_exclude(path)]
        logger.debug(f"Enumerated {len(result)} of {len(files)} vault files")
        return result


def create_source(settings, storage: StorageAccessor) -> VaultSource:
    """
    Factory function to create the source for a backup pass.

    Args:
        settings: BackupSettings
        storage: Source accessor from get_source_storage()

    Returns:
        VaultSource instance
    """
    excluded = [settings.restore_folder]
    if settings.backup_destination == 'vault':
        excluded.append(settings.backup_folder)
    ignore_names = settings.ignore_names if settings.include_hidden_folder else []
    return VaultSource(storage, excluded_folders=excluded, ignore_names=ignore_names)
