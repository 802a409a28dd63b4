"""
Restore executor - brings files back from differential backups.

Supports:
- Single-file restore of one chosen revision
- Vault restore: many files as of per-path cutoffs, grouped by archive and
  gated behind an explicit confirmation of the plan
- Folder restore: the vault restore restricted to one folder, with
  navigation helpers for picking the folder and the cutoff
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from diffzip.models import LATEST, HistoryEntry, VersionHistory
from diffzip.progress import ProgressCallback, ProgressEvent
from diffzip.settings import BackupSettings
from diffzip.utils.hashing import compute_digest
from diffzip.vault import Vault
from .compression import ArchiveReader, CompressionError, piece_name
from .executor import BackupError, load_history
from .storage import StorageAccessor, StorageError, get_destination_storage, get_source_storage


logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 1024 * 1024


class RestoreError(Exception):
    """Raised when a restore cannot complete."""
    pass


class RestoreMethod(Enum):
    """Where a single restored file is written."""

    OVERWRITE = 'overwrite'
    RESTORE_FOLDER = 'restore-folder'
    SUFFIX = 'suffix'


def resolve_restore_path(path: str, archive_name: str, method, restore_folder: str) -> str:
    """
    Compute the vault path a restored file is written to.

    Args:
        path: Tracked path of the file
        archive_name: Archive holding the chosen revision
        method: RestoreMethod (or its value)
        restore_folder: Restore staging folder

    Returns:
        Target path; with SUFFIX, 'notes/a.md' from '2024-1-5-3600.zip'
        becomes 'notes/a-2024-1-5-3600.md'
    """
    method = RestoreMethod(method)
    if method is RestoreMethod.OVERWRITE:
        return path
    if method is RestoreMethod.RESTORE_FOLDER:
        return f"{restore_folder.strip('/')}/{path}" if restore_folder.strip('/') else path

    suffix = archive_name[:-4] if archive_name.endswith('.zip') else archive_name
    folder, _, name = path.rpartition('/')
    stem, dot, ext = name.rpartition('.')
    if not dot or not stem:
        renamed = f"{name}-{suffix}"
    else:
        renamed = f"{stem}-{suffix}.{ext}"
    return f"{folder}/{renamed}" if folder else renamed


def expand_selectors(selectors: Mapping[str, int], paths) -> Dict[str, int]:
    """
    Expand restore selectors into concrete paths.

    'dir/*' selects every tracked path under dir/, '*' selects everything.
    Explicit paths override wildcards.

    Args:
        selectors: Path or wildcard mapped to a cutoff (epoch ms or LATEST)
        paths: Tracked paths

    Returns:
        Path -> cutoff
    """
    paths = list(paths)
    expanded: Dict[str, int] = {}
    wildcards = sorted((k, v) for k, v in selectors.items() if k.endswith('*'))
    for selector, cutoff in wildcards:
        prefix = selector[:-1]
        for path in paths:
            if path.startswith(prefix):
                expanded[path] = cutoff
    for selector, cutoff in selectors.items():
        if not selector.endswith('*') and selector in paths:
            expanded[selector] = cutoff
    return expanded


def list_selectors(history: VersionHistory) -> List[str]:
    """Folder wildcards first, then tracked files, each sorted."""
    files = sorted(history)
    folders = set()
    for path in files:
        folder = path.rpartition('/')[0]
        folders.add(f"{folder}/*" if folder else '*')
    return sorted(folders) + files


@dataclass
class RestoreItem:
    path: str
    target: str
    entry: HistoryEntry


@dataclass
class RestorePlan:
    """Files to extract grouped by archive, plus files to delete."""
    by_archive: Dict[str, List[RestoreItem]] = field(default_factory=OrderedDict)
    deletions: List[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def file_count(self) -> int:
        return sum(len(items) for items in self.by_archive.values())

    @property
    def archive_count(self) -> int:
        return len(self.by_archive)

    @property
    def is_empty(self) -> bool:
        return not self.by_archive and not self.deletions

    def summary(self) -> str:
        lines = [
            f"{self.file_count} files will be restored from {self.archive_count} archives"
            f" and {len(self.deletions)} files will be deleted."
        ]
        for archive_name, items in self.by_archive.items():
            lines.append(f"- {archive_name}: {len(items)} files")
        for target in self.deletions:
            lines.append(f"- delete {target}")
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'files': self.file_count,
            'archives': {
                name: [{'path': i.path, 'target': i.target, 'modified': i.entry.modified} for i in items]
                for name, items in self.by_archive.items()
            },
            'deletions': self.deletions,
            'skipped': self.skipped,
            'summary': self.summary(),
        }


@dataclass
class RestoreResult:
    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    restored: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed_archives: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'restored': self.restored,
            'deleted': self.deleted,
            'failed_archives': self.failed_archives,
            'error_message': self.error_message,
            'logs': '\n'.join(self.logs),
        }


class RestoreExecutor:
    """
    Extracts files from archives at the destination back into the vault.
    """

    def __init__(
        self,
        settings: BackupSettings,
        source_storage: StorageAccessor,
        destination: StorageAccessor,
        progress: Optional[ProgressCallback] = None,
    ):
        """
        Args:
            settings: Engine settings (restore folder)
            source_storage: Accessor writing into the live vault
            destination: Accessor holding the archives
            progress: Optional receiver of ProgressEvent objects
        """
        self.settings = settings
        self.source_storage = source_storage
        self.destination = destination
        self.progress = progress
        self._history = None
        self._logs = None

    @property
    def history(self) -> VersionHistory:
        if self._history is None:
            try:
                self._history = load_history(self.destination)
            except BackupError as e:
                raise RestoreError(str(e))
        return self._history

    def reload(self):
        self._history = None

    # -- archive access ----------------------------------------------------

    def iter_pieces(self, archive_name: str) -> Iterator[bytes]:
        """
        Yield the pieces of an archive in order, reading each on demand.

        Raises:
            RestoreError: If the first piece does not exist
            StorageError: If a piece cannot be read or decrypted
        """
        index = 0
        while True:
            name = piece_name(archive_name, index)
            data = self.destination.read_binary(name)
            if data is None:
                if index == 0:
                    raise RestoreError(f"Archive not found: {archive_name}")
                return
            logger.debug(f"Read {name} ({len(data)} bytes)")
            yield data
            index += 1

    def extract(self, archive_name: str, targets: Mapping[str, str]) -> List[str]:
        """
        Extract entries of one archive into the vault.

        Reading stops as soon as every requested entry has been written.

        Args:
            archive_name: Archive to read
            targets: Entry name -> vault path to write

        Returns:
            Entry names that were restored

        Raises:
            RestoreError: If the archive is missing or a write fails
            CompressionError: If the archive is corrupt
            StorageError: If a piece cannot be read or decrypted
        """
        remaining = dict(targets)
        restored = []

        def should_extract(entry) -> bool:
            return entry.name in remaining

        def on_extracted(name: str, data: bytes):
            target = remaining.pop(name)
            if not self.source_storage.write_binary(target, data):
                raise RestoreError(f"Failed to write {target}")
            restored.append(name)
            self._log(f"{target} has been restored from {archive_name}")
            self._emit('extract', 'restore-extract', f"Restored {target}", len(restored), len(targets), target)

        reader = ArchiveReader(should_extract, on_extracted)
        exhausted = True
        for data in self.iter_pieces(archive_name):
            reader.push_all(data, READ_CHUNK_SIZE)
            if not remaining or reader.finished:
                exhausted = False
                break
        if exhausted:
            reader.finish()

        for name in remaining:
            self._log(f"{name} was not found in {archive_name}")
        return restored

    # -- single file -------------------------------------------------------

    def restore_file(self, path: str, archive_name: str, restore_as: Optional[str] = None) -> str:
        """
        Restore one file from one archive.

        Args:
            path: Tracked path (entry name inside the archive)
            archive_name: Archive holding the wanted revision
            restore_as: Vault path to write (defaults to path)

        Returns:
            The vault path written

        Raises:
            RestoreError: If the file could not be restored
        """
        target = restore_as or path
        try:
            restored = self.extract(archive_name, {path: target})
        except (CompressionError, StorageError) as e:
            raise RestoreError(f"Failed to restore {path} from {archive_name}: {e}")
        if not restored:
            raise RestoreError(f"{path} was not found in {archive_name}")
        return target

    def restore_revision(self, path: str, archive_name: str, method=RestoreMethod.OVERWRITE) -> str:
        """Restore a tracked file's revision to the place chosen by method."""
        record = self.history.get(path)
        if record is None:
            raise RestoreError(f"{path} is not in the backup information")
        if not any(e.zip_name == archive_name and not e.missing for e in record.history):
            raise RestoreError(f"{path} has no revision in {archive_name}")
        target = resolve_restore_path(path, archive_name, method, self.settings.restore_folder)
        return self.restore_file(path, archive_name, target)

    # -- vault restore -----------------------------------------------------

    def plan_vault_restore(
        self,
        selectors: Mapping[str, int],
        only_new: bool = False,
        skip_deleted: bool = True,
        prefix: str = '',
    ) -> RestorePlan:
        """
        Work out what a vault restore would do.

        Args:
            selectors: Path or wildcard -> cutoff (epoch ms, LATEST for newest)
            only_new: Keep live files that are newer than the chosen revision
            skip_deleted: Leave files whose chosen revision is a tombstone
            prefix: Folder to restore under instead of the original place

        Returns:
            RestorePlan
        """
        plan = RestorePlan()
        normalize = self.source_storage.normalize_path
        prefix = normalize(prefix)
        selectors = {normalize(selector): cutoff for selector, cutoff in selectors.items()}
        expanded = expand_selectors(selectors, self.history)

        for path in sorted(expanded):
            record = self.history.get(path)
            latest = record.latest(expanded[path])
            if latest is None:
                plan.skipped += 1
                continue
            target = f"{prefix}/{path}" if prefix else path

            if latest.missing:
                if skip_deleted or not self.source_storage.is_file_exists(target):
                    plan.skipped += 1
                else:
                    plan.deletions.append(target)
                continue

            if self._is_current(target, latest, only_new):
                plan.skipped += 1
                continue

            plan.by_archive.setdefault(latest.zip_name, []).append(RestoreItem(path, target, latest))

        return plan

    def plan_folder_restore(self, folder: str, cutoff: int = LATEST, **options) -> RestorePlan:
        """Plan a vault restore of every tracked file under folder."""
        folder = self.source_storage.normalize_path(folder)
        selector = f"{folder}/*" if folder else '*'
        return self.plan_vault_restore({selector: cutoff}, **options)

    def _is_current(self, target: str, entry: HistoryEntry, only_new: bool) -> bool:
        try:
            stat = self.source_storage.stat(target)
            if stat is None or stat.kind != 'file':
                return False
            if only_new and stat.mtime > entry.modified_ms:
                return True
            live = self.source_storage.read_binary(target)
        except StorageError as e:
            logger.warning(f"Could not inspect {target}: {e}")
            return False
        return live is not None and compute_digest(live) == entry.digest

    def restore_vault(self, plan: RestorePlan, confirm: Callable[[RestorePlan], bool]) -> RestoreResult:
        """
        Execute a restore plan once the caller has confirmed it.

        Each archive is opened once. A corrupt or unreadable archive fails
        only its own files.

        Args:
            plan: Plan from plan_vault_restore()
            confirm: Receives the plan, returns True to proceed

        Returns:
            RestoreResult with status 'success', 'partial', 'cancelled'
            or 'failed'
        """
        result = RestoreResult(started_at=datetime.utcnow())
        self._logs = result.logs

        try:
            if plan.is_empty:
                self._log("Nothing to restore")
                result.status = 'success'
                return result
            if not confirm(plan):
                self._log("Restore cancelled")
                result.status = 'cancelled'
                return result

            self._log(plan.summary().splitlines()[0])
            for archive_name, items in plan.by_archive.items():
                targets = {item.path: item.target for item in items}
                try:
                    restored = self.extract(archive_name, targets)
                except (RestoreError, CompressionError, StorageError) as e:
                    self._log(f"Failed to restore from {archive_name}: {e}")
                    result.failed_archives.append(archive_name)
                    continue
                result.restored.extend(targets[name] for name in restored)

            for target in plan.deletions:
                if self.source_storage.delete(target):
                    result.deleted.append(target)
                    self._log(f"{target} has been deleted")
                else:
                    self._log(f"Failed to delete {target}")

            result.status = 'partial' if result.failed_archives else 'success'
        except Exception as e:
            result.status = 'failed'
            result.error_message = str(e)
            self._log(f"Restore failed: {e}")
            logger.exception("Restore failed")
        finally:
            result.completed_at = datetime.utcnow()
            self._logs = None
            self._emit('done', 'restore', f"Restore {result.status}")

        return result

    def _emit(self, phase: str, key: str, message: str, processed: int = 0, total: int = 0,
              path: Optional[str] = None):
        if self.progress is None:
            return
        try:
            self.progress(ProgressEvent(phase, key, message, processed, total, path))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _log(self, message: str):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        if self._logs is not None:
            self._logs.append(f"[{timestamp}] {message}")
        logger.info(message)


class FolderBrowser:
    """Navigation over the tracked tree for picking a folder and a cutoff."""

    def __init__(self, history: VersionHistory):
        self.history = history

    def list_folder(self, folder: str = '') -> Tuple[List[str], List[str]]:
        """
        List direct children of a tracked folder.

        Returns:
            (folders, files) as full paths, each sorted
        """
        folder = folder.strip('/')
        prefix = f"{folder}/" if folder else ''
        folders, files = set(), []
        for path in self.history:
            if not path.startswith(prefix):
                continue
            rest = path[len(prefix):]
            if '/' in rest:
                folders.add(prefix + rest.split('/', 1)[0])
            else:
                files.append(path)
        return sorted(folders), sorted(files)

    @staticmethod
    def parent(folder: str) -> str:
        return folder.strip('/').rpartition('/')[0]

    def timestamps_under(self, folder: str = '') -> List[int]:
        """Distinct revision timestamps of files under folder, newest first."""
        folder = folder.strip('/')
        prefix = f"{folder}/" if folder else ''
        stamps = set()
        for path, record in self.history.items():
            if path.startswith(prefix):
                stamps.update(e.modified_ms for e in record.history)
        return sorted(stamps, reverse=True)


def create_restore_executor(
    settings: BackupSettings,
    vault: Vault,
    progress: Optional[ProgressCallback] = None,
) -> RestoreExecutor:
    """Wire storages for the configured destination."""
    return RestoreExecutor(
        settings,
        get_source_storage(settings, vault),
        get_destination_storage(settings, vault),
        progress=progress,
    )
