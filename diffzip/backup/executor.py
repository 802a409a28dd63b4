"""
Backup executor - runs differential backup passes.

Workflow of one pass:
1. Enumerate the vault (minus backup, restore and trash folders)
2. Record tombstones for tracked files that disappeared
3. Digest every candidate and compress the changed ones
4. Embed the updated backup information in the archive
5. Split the archive and write the pieces in order
6. Persist the backup information at the destination root
7. Chain another pass if files were deferred by the per-archive limit
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Set

from diffzip.models import INFO_FILE, VersionHistory
from diffzip.progress import ProgressCallback, ProgressEvent
from diffzip.settings import AutoBackupType, BackupSettings
from diffzip.utils.hashing import compute_digest
from diffzip.vault import Vault
from .compression import ArchiveWriter, generate_archive_filename, piece_name, split_archive
from .sources import VaultSource, create_source
from .storage import (
    StorageAccessor,
    StorageError,
    UnsupportedOperation,
    get_destination_storage,
    get_source_storage,
)


logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a backup pass cannot complete."""
    pass


def load_history(destination: StorageAccessor) -> VersionHistory:
    """
    Load the backup information from the destination root.

    A missing or unparsable document yields an empty history.

    Raises:
        BackupError: If the document exists but cannot be read or decrypted
    """
    try:
        data = destination.read_toc(INFO_FILE)
    except StorageError as e:
        raise BackupError(f"Failed to read backup information: {e}")

    if data is None:
        logger.info("Backup information looks missing, starting a new history")
        return VersionHistory()

    try:
        return VersionHistory.from_document(data.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Backup information is broken, starting a new history: {e}")
        return VersionHistory()


def save_history(destination: StorageAccessor, history: VersionHistory):
    """
    Raises:
        BackupError: If the document cannot be written
    """
    if not destination.write_toc(INFO_FILE, history.to_document().encode('utf-8')):
        raise BackupError(f"Failed to write {INFO_FILE}")


def reset_history(destination: StorageAccessor):
    """Replace the backup information with an empty document."""
    save_history(destination, VersionHistory())
    logger.info("Backup information has been reset")


@dataclass
class PassResult:
    """Outcome of a single pass."""
    archive_name: Optional[str] = None
    pieces: List[str] = field(default_factory=list)
    archived: List[str] = field(default_factory=list)
    tombstoned: List[str] = field(default_factory=list)
    examined: List[str] = field(default_factory=list)
    deferred: int = 0
    failed: int = 0
    size_bytes: int = 0

    @property
    def written(self) -> bool:
        return self.archive_name is not None

    def to_dict(self) -> dict:
        return {
            'archive_name': self.archive_name,
            'pieces': self.pieces,
            'archived': self.archived,
            'tombstoned': self.tombstoned,
            'deferred': self.deferred,
            'failed': self.failed,
            'size_bytes': self.size_bytes,
        }


@dataclass
class BackupResult:
    """Outcome of a backup run (one or more chained passes)."""
    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    passes: List[PassResult] = field(default_factory=list)
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def archive_names(self) -> List[str]:
        return [p.archive_name for p in self.passes if p.written]

    @property
    def files_archived(self) -> int:
        return sum(len(p.archived) for p in self.passes)

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'archives': self.archive_names,
            'files_archived': self.files_archived,
            'passes': [p.to_dict() for p in self.passes],
            'error_message': self.error_message,
            'logs': '\n'.join(self.logs),
        }


class BackupExecutor:
    """
    Orchestrates backup passes from the live vault to one destination.
    """

    def __init__(
        self,
        settings: BackupSettings,
        source: VaultSource,
        source_storage: StorageAccessor,
        destination: StorageAccessor,
        backup_type: AutoBackupType = AutoBackupType.FULL,
        progress: Optional[ProgressCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize backup executor.

        Args:
            settings: Engine settings (limits, chaining)
            source: Enumerates candidate files
            source_storage: Accessor reading the live vault
            destination: Accessor receiving pieces and backup information
            backup_type: Backup style of every pass in this run
            progress: Optional receiver of ProgressEvent objects
            clock: Returns the local time of a pass (datetime.now by default)
        """
        self.settings = settings
        self.source = source
        self.source_storage = source_storage
        self.destination = destination
        self.backup_type = AutoBackupType.parse(backup_type)
        self.progress = progress
        self.clock = clock or datetime.now

        self.result = None
        self.history = None
        self._used_names: Set[str] = set()

    def execute(self) -> BackupResult:
        """
        Run passes until nothing is deferred (or chaining is off).

        Returns:
            BackupResult; failures are reported in it rather than raised
        """
        self.result = BackupResult(status='running', started_at=datetime.utcnow())
        self._log(f"Starting backup ({self.backup_type.value}) to {self.destination!r}")

        try:
            self._execute_workflow()
            self.result.status = 'success'
            self._log(f"Backup completed successfully ({self.result.files_archived} files archived)")
        except Exception as e:
            self.result.status = 'failed'
            self.result.error_message = str(e)
            self._log(f"Backup failed: {e}")
            logger.exception("Backup failed")
        finally:
            self.result.completed_at = datetime.utcnow()
            self._emit('done', 'backup', f"Backup {self.result.status}")

        return self.result

    def _execute_workflow(self):
        self.history = load_history(self.destination)
        self._log(f"Loaded backup information ({len(self.history)} tracked files)")

        examined: Set[str] = set()
        while True:
            pass_result = self.run_pass(examined)
            self.result.passes.append(pass_result)
            examined.update(pass_result.examined)

            if not pass_result.deferred:
                break
            if not self.settings.perform_next_backup_on_max_files:
                self._log(f"{pass_result.deferred} files deferred, next backup will pick them up")
                break
            self._log(f"{pass_result.deferred} files deferred, starting next pass")

    def run_pass(self, excluded: Optional[Set[str]] = None) -> PassResult:
        """
        Run one pass against the in-memory history.

        Args:
            excluded: Paths already handled by earlier passes of this run

        Returns:
            PassResult (archive_name is None when nothing changed)

        Raises:
            BackupError: If a piece or the backup information cannot be written
        """
        if self.history is None:
            self.history = load_history(self.destination)
        excluded = excluded or set()

        now = self.clock()
        processed_at = int(now.timestamp() * 1000)
        archive_name = self._allocate_archive_name(now)
        result = PassResult()

        files = self.source.list_files()
        live = set(files)

        if self.backup_type.tombstone:
            for path, record in list(self.history.items()):
                if path in live or record.missing:
                    continue
                self.history.record_missing(path, archive_name, processed_at)
                result.tombstoned.append(path)
                self._log(f"Missing: {path}")

        writer = ArchiveWriter()
        max_files = self.settings.max_files_in_zip
        total = len(files)

        for index, path in enumerate(files):
            if path in excluded:
                continue
            self._emit('scan', 'backup-scan', f"Backup processing {index + 1}/{total}", index + 1, total, path)

            try:
                stat = self.source_storage.stat(path)
            except UnsupportedOperation:
                stat = None
            except StorageError as e:
                logger.warning(f"Could not stat {path}: {e}")
                stat = None
            if stat is None:
                result.failed += 1
                continue

            record = self.history.get(path)
            if (self.backup_type.only_new and record is not None and not record.missing
                    and stat.mtime <= record.mtime):
                result.examined.append(path)
                continue

            try:
                content = self.source_storage.read_binary(path)
            except StorageError as e:
                logger.warning(f"Could not read {path}: {e}")
                content = None
            if content is None:
                result.failed += 1
                continue

            digest = compute_digest(content)
            if record is not None and not record.missing and record.digest == digest:
                result.examined.append(path)
                continue

            if max_files and len(result.archived) >= max_files:
                result.deferred += 1
                continue

            writer.add_file(content, path, stat.mtime)
            self.history.record_change(path, digest, stat.mtime, archive_name, processed_at)
            result.archived.append(path)
            result.examined.append(path)
            self._emit('compress', 'backup-compress',
                       f"Compressed {len(result.archived)} files ({writer.current_size} bytes)",
                       len(result.archived), total, path)
            logger.debug(f"Archived {path} ({len(content)} bytes)")

        if not result.archived and not result.tombstoned:
            writer.abort()
            self._log("Nothing has been changed! Generating ZIP has been skipped.")
            return result

        self._log(f"Compressing {len(result.archived)} files into {archive_name}")
        writer.add_text_file(self.history.to_document(), INFO_FILE, processed_at)
        buffer = writer.finalize().result()
        result.size_bytes = len(buffer)

        self._write_pieces(archive_name, buffer, result)
        save_history(self.destination, self.history)
        self._log("Backup information has been updated")

        result.archive_name = archive_name
        self._used_names.add(archive_name)
        return result

    def _write_pieces(self, archive_name: str, buffer: bytes, result: PassResult):
        pieces = list(split_archive(buffer, self.settings.max_size_bytes))
        for index, chunk in pieces:
            name = piece_name(archive_name, index)
            self._emit('write', 'backup-write', f"Writing {name}", index + 1, len(pieces), name)
            if not self.destination.write_binary(name, chunk):
                raise BackupError(f"Failed to write {name}")
            result.pieces.append(name)
            self._log(f"{name} has been created ({len(chunk)} bytes)")

    def _allocate_archive_name(self, now: datetime) -> str:
        offset = 0
        while True:
            name = generate_archive_filename(now, offset)
            if name not in self._used_names and not self.destination.is_exists(name):
                self._used_names.add(name)
                return name
            offset += 1

    def _emit(self, phase: str, key: str, message: str, processed: int = 0, total: int = 0,
              path: Optional[str] = None):
        if self.progress is None:
            return
        try:
            self.progress(ProgressEvent(phase, key, message, processed, total, path))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        if self.result is not None:
            self.result.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def create_executor(
    settings: BackupSettings,
    vault: Vault,
    backup_type: AutoBackupType = AutoBackupType.FULL,
    progress: Optional[ProgressCallback] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> BackupExecutor:
    """Wire storages and source for the configured destination."""
    source_storage = get_source_storage(settings, vault)
    destination = get_destination_storage(settings, vault)
    source = create_source(settings, source_storage)
    return BackupExecutor(
        settings,
        source,
        source_storage,
        destination,
        backup_type=backup_type,
        progress=progress,
        clock=clock,
    )


def execute_backup(
    settings: BackupSettings,
    vault: Vault,
    backup_type: AutoBackupType = AutoBackupType.FULL,
    progress: Optional[ProgressCallback] = None,
) -> BackupResult:
    """
    Run a backup with the configured destination.

    Args:
        settings: Engine settings
        vault: Live vault
        backup_type: Backup style
        progress: Optional progress receiver

    Returns:
        BackupResult
    """
    executor = create_executor(settings, vault, backup_type, progress)
    return executor.execute()
