"""
Version history ("TOC") data model.

The history maps every tracked vault path to its latest digest and the
ordered list of archives that hold its revisions. It is persisted as a YAML
block inside ``backupinfo.md`` at the destination root and embedded under the
same name in every archive it describes.
"""

import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

import yaml


INFO_FILE = 'backupinfo.md'

# Cutoff meaning "the newest revision available"
LATEST = sys.maxsize

_FENCE = re.compile(r'^```$', re.MULTILINE)


def to_iso(epoch_ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC timestamp (``...Z``)."""
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def from_iso(value: str) -> int:
    """Parse an ISO-8601 timestamp into epoch milliseconds."""
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def _as_iso(value) -> str:
    # Unquoted timestamps come back from YAML as datetime objects
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return to_iso(int(round(value.timestamp() * 1000)))
    return str(value)


@dataclass
class HistoryEntry:
    """One revision of a file, recorded by one backup pass."""

    zip_name: str
    modified: str
    digest: str
    processed: Optional[int] = None
    missing: bool = False

    @property
    def modified_ms(self) -> int:
        return from_iso(self.modified)

    def to_dict(self) -> dict:
        data = {
            'zipName': self.zip_name,
            'modified': self.modified,
            'processed': self.processed,
            'digest': self.digest,
        }
        if self.processed is None:
            del data['processed']
        if self.missing:
            data['missing'] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'HistoryEntry':
        return cls(
            zip_name=data['zipName'],
            modified=_as_iso(data['modified']),
            digest=data.get('digest') or '',
            processed=data.get('processed'),
            missing=bool(data.get('missing', False)),
        )


@dataclass
class FileRecord:
    """Tracking record for one vault path."""

    filename: str
    digest: str
    mtime: int
    history: List[HistoryEntry] = field(default_factory=list)
    processed: Optional[int] = None
    missing: bool = False

    def entries_until(self, cutoff: int = LATEST) -> List[HistoryEntry]:
        """
        Get the revisions recorded at or before a cutoff.

        Args:
            cutoff: Epoch milliseconds (LATEST for no limit)

        Returns:
            Entries sorted by modified timestamp, then by pass; remaining
            ties keep append order
        """
        entries = [e for e in self.history if e.modified_ms <= cutoff]
        return sorted(entries, key=lambda e: (e.modified_ms, e.processed or 0))

    def latest(self, cutoff: int = LATEST) -> Optional[HistoryEntry]:
        entries = self.entries_until(cutoff)
        return entries[-1] if entries else None

    def to_dict(self) -> dict:
        data = {
            'filename': self.filename,
            'digest': self.digest,
            'history': [e.to_dict() for e in self.history],
            'mtime': self.mtime,
        }
        if self.processed is not None:
            data['processed'] = self.processed
        if self.missing:
            data['missing'] = True
        return data

    @classmethod
    def from_dict(cls, path: str, data: dict) -> 'FileRecord':
        return cls(
            filename=data.get('filename') or path,
            digest=data.get('digest') or '',
            mtime=int(data.get('mtime') or 0),
            history=[HistoryEntry.from_dict(e) for e in data.get('history') or []],
            processed=data.get('processed'),
            missing=bool(data.get('missing', False)),
        )


class VersionHistory:
    """Mapping of vault path to FileRecord, mutated in memory during a pass."""

    def __init__(self, records: Optional[Dict[str, FileRecord]] = None):
        self.records: Dict[str, FileRecord] = dict(records or {})

    def __contains__(self, path: str) -> bool:
        return path in self.records

    def __iter__(self) -> Iterator[str]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def get(self, path: str) -> Optional[FileRecord]:
        return self.records.get(path)

    def items(self) -> Iterator[Tuple[str, FileRecord]]:
        return iter(self.records.items())

    def record_change(self, path: str, digest: str, mtime: int, zip_name: str, processed: int) -> FileRecord:
        """
        Record a new revision of a file archived into zip_name.

        Creates the record on first sight and clears any missing flag. A file
        that comes back with an mtime older than its tombstone is stamped
        with the tombstone time so the revision still sorts after it.
        """
        record = self.records.get(path)
        if record is None:
            record = FileRecord(filename=path, digest=digest, mtime=mtime)
            self.records[path] = record

        modified = mtime
        if record.missing:
            tombstones = [e.modified_ms for e in record.history if e.missing]
            if tombstones:
                modified = max(modified, max(tombstones))

        record.digest = digest
        record.mtime = mtime
        record.processed = processed
        record.missing = False
        record.history.append(HistoryEntry(
            zip_name=zip_name,
            modified=to_iso(modified),
            digest=digest,
            processed=processed,
        ))
        return record

    def record_missing(self, path: str, zip_name: str, processed: int) -> FileRecord:
        """Append a tombstone for a tracked file that disappeared from the source."""
        record = self.records[path]
        record.digest = ''
        record.processed = processed
        record.missing = True
        record.history.append(HistoryEntry(
            zip_name=zip_name,
            modified=to_iso(processed),
            digest='',
            processed=processed,
            missing=True,
        ))
        return record

    def to_document(self) -> str:
        data = {path: record.to_dict() for path, record in self.records.items()}
        body = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
        return f"```\n{body}\n```\n"

    @classmethod
    def from_document(cls, text: str) -> 'VersionHistory':
        """
        Parse a TOC document.

        Raises:
            ValueError: If the document is not a YAML mapping of records
        """
        try:
            data = yaml.safe_load(_FENCE.sub('', text))
        except yaml.YAMLError as e:
            raise ValueError(f"Could not parse backup information: {e}")

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("Backup information is not a mapping")

        try:
            records = {
                str(path): FileRecord.from_dict(str(path), value or {})
                for path, value in data.items()
            }
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed backup information: {e}")
        return cls(records)
