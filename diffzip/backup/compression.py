"""
ZIP archive writer and streaming reader for differential backups.

- ArchiveWriter: builds one ZIP in memory from (path, bytes, mtime) entries,
  deflated at maximum level, and resolves a Future with the finished buffer.
- ArchiveReader: consumes ZIP bytes pushed in arbitrary chunks (possibly
  spread over several split pieces), asks a predicate about each entry and
  hands accepted entries to a sink once fully inflated.
"""

import io
import logging
import struct
import time
import zipfile
import zlib
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Tuple

from diffzip.utils.hashing import pieces


logger = logging.getLogger(__name__)

COMPRESS_LEVEL = 9

_LOCAL_HEADER = struct.Struct('<4s2B4HL2L2H')
_LOCAL_SIGNATURE = b'PK\x03\x04'
_DESCRIPTOR_SIGNATURE = b'PK\x07\x08'
# Any of these after the last entry means the local entries are over
_TRAILER_SIGNATURES = (b'PK\x01\x02', b'PK\x05\x06', b'PK\x06\x06', b'PK\x06\x07', b'PK\x05\x05')

_FLAG_ENCRYPTED = 0x1
_FLAG_DATA_DESCRIPTOR = 0x8
_FLAG_UTF8 = 0x800
_ZIP64_EXTRA = 0x0001
_ZIP64_LIMIT = 0xFFFFFFFF


class CompressionError(Exception):
    """Raised when an archive cannot be built or parsed."""
    pass


class ArchiveAborted(CompressionError):
    """Raised when an archive was aborted by its caller."""
    pass


def _zip_date_time(mtime_ms: Optional[int]) -> Tuple[int, int, int, int, int, int]:
    seconds = mtime_ms / 1000 if mtime_ms is not None else time.time()
    dt = datetime.fromtimestamp(seconds)
    # ZIP timestamps cannot express anything before 1980
    if dt.year < 1980:
        return (1980, 1, 1, 0, 0, 0)
    return (dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second)


class ArchiveWriter:
    """
    Builds a single ZIP archive.

    One writer serves exactly one archive. finalize() closes it and resolves
    the result Future once; abort() or an internal error fails it instead.
    """

    def __init__(self, compresslevel: int = COMPRESS_LEVEL):
        self._buffer = io.BytesIO()
        self._zip = zipfile.ZipFile(self._buffer, 'w', zipfile.ZIP_DEFLATED, compresslevel=compresslevel)
        self._compresslevel = compresslevel
        self._result: Future = Future()
        self._closed = False

        self.processed_count = 0
        self.processed_length = 0

    @property
    def archived(self) -> Future:
        """Future resolved with the finished archive bytes."""
        return self._result

    @property
    def current_size(self) -> int:
        return self._buffer.tell()

    @property
    def closed(self) -> bool:
        return self._closed

    def add_file(self, data: bytes, path: str, mtime: Optional[int] = None):
        """
        Compress one complete file into the archive.

        Args:
            data: Full file content
            path: Entry name ('/'-separated relative path)
            mtime: Modification time in epoch milliseconds (now if None)

        Raises:
            CompressionError: If the writer is closed or compression fails
        """
        if self._closed:
            raise CompressionError(f"Archive is already closed, cannot add {path}")

        info = zipfile.ZipInfo(path, date_time=_zip_date_time(mtime))
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16

        try:
            self._zip.writestr(info, data, compresslevel=self._compresslevel)
        except Exception as e:
            error = CompressionError(f"Failed to compress {path}: {e}")
            self._fail(error)
            raise error

        self.processed_count += 1
        self.processed_length += len(data)

    def add_text_file(self, text: str, path: str, mtime: Optional[int] = None):
        self.add_file(text.encode('utf-8'), path, mtime)

    def finalize(self) -> Future:
        """
        Close the archive and resolve the result Future.

        Returns:
            The result Future (already resolved or failed)
        """
        if self._closed:
            raise CompressionError("Archive has already been finalized")
        self._closed = True
        try:
            self._zip.close()
        except Exception as e:
            self._result.set_exception(CompressionError(f"Failed to finalize archive: {e}"))
            return self._result

        self._result.set_result(self._buffer.getvalue())
        self._buffer = None
        return self._result

    def abort(self):
        """Stop building the archive; the result Future fails with ArchiveAborted."""
        self._fail(ArchiveAborted("Aborted"))

    def _fail(self, error: CompressionError):
        if self._result.done():
            return
        self._closed = True
        try:
            self._zip.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing failed archive: {e}")
        self._result.set_exception(error)


@dataclass
class ArchiveEntry:
    """Local header of one archive entry, as seen by the reader's predicate."""
    name: str
    compress_type: int
    crc: int
    compressed_size: int
    file_size: int
    date_time: Tuple[int, int, int, int, int, int]
    has_descriptor: bool
    zip64: bool = False

    @property
    def is_dir(self) -> bool:
        return self.name.endswith('/')


def _decode_date_time(dos_date: int, dos_time: int) -> Tuple[int, int, int, int, int, int]:
    return (
        (dos_date >> 9) + 1980,
        (dos_date >> 5) & 0xF,
        dos_date & 0x1F,
        dos_time >> 11,
        (dos_time >> 5) & 0x3F,
        (dos_time & 0x1F) * 2,
    )


def _parse_zip64_extra(extra: bytes, file_size: int, compressed_size: int) -> Tuple[int, int, bool]:
    offset = 0
    while offset + 4 <= len(extra):
        header_id, size = struct.unpack_from('<HH', extra, offset)
        body = extra[offset + 4:offset + 4 + size]
        if header_id == _ZIP64_EXTRA:
            position = 0
            if file_size == _ZIP64_LIMIT and position + 8 <= len(body):
                file_size = struct.unpack_from('<Q', body, position)[0]
                position += 8
            if compressed_size == _ZIP64_LIMIT and position + 8 <= len(body):
                compressed_size = struct.unpack_from('<Q', body, position)[0]
            return file_size, compressed_size, True
        offset += 4 + size
    return file_size, compressed_size, False


class ArchiveReader:
    """
    Push-driven ZIP extractor.

    The predicate is called once per entry header; only accepted entries are
    inflated, and the sink receives (name, content) when an entry completes.
    Rejected entries with known sizes are skipped without inflating.
    """

    _HEADER, _DATA, _DESCRIPTOR, _DONE = range(4)

    def __init__(
        self,
        should_extract: Callable[[ArchiveEntry], bool],
        on_extracted: Callable[[str, bytes], None],
    ):
        self._should_extract = should_extract
        self._on_extracted = on_extracted
        self._buffer = bytearray()
        self._state = self._HEADER

        self._entry: Optional[ArchiveEntry] = None
        self._accepted = False
        self._remaining = 0
        self._inflater = None
        self._chunks: List[bytes] = []

        self.entries_seen = 0
        self.entries_extracted = 0

    @property
    def finished(self) -> bool:
        """True once the end of the local entries has been reached."""
        return self._state == self._DONE

    def push(self, data: bytes, final: bool = False):
        """
        Feed the next chunk of archive bytes.

        Args:
            data: Next chunk (may split headers or entries anywhere)
            final: True if no more data will follow

        Raises:
            CompressionError: On corrupt or truncated input
        """
        if self._state != self._DONE:
            self._buffer += data
            self._process()
        if final:
            self.finish()

    def push_all(self, data: bytes, chunk_size: int = 1024 * 1024, final: bool = False):
        """Push a whole buffer in chunk_size pieces."""
        for chunk in pieces(data, chunk_size):
            self.push(chunk)
            if self.finished:
                break
        if final:
            self.finish()

    def finish(self):
        """
        Signal the end of input.

        Raises:
            CompressionError: If the archive ended inside an entry
        """
        if self._state == self._DONE:
            return
        if self._state == self._HEADER and not self._buffer and self.entries_seen:
            # Archive without a central directory; every entry is complete
            self._state = self._DONE
            return
        raise CompressionError("Unexpected end of archive")

    def _process(self):
        while True:
            if self._state == self._HEADER:
                if not self._read_header():
                    return
            elif self._state == self._DATA:
                if not self._read_data():
                    return
            elif self._state == self._DESCRIPTOR:
                if not self._read_descriptor():
                    return
            else:
                self._buffer.clear()
                return

    def _read_header(self) -> bool:
        if len(self._buffer) < 4:
            return False
        signature = bytes(self._buffer[:4])
        if signature in _TRAILER_SIGNATURES:
            self._state = self._DONE
            return True
        if signature != _LOCAL_SIGNATURE:
            raise CompressionError(f"Bad local file header signature: {signature!r}")
        if len(self._buffer) < _LOCAL_HEADER.size:
            return False

        (_, _, _, flags, compress_type, dos_time, dos_date, crc,
         compressed_size, file_size, name_length, extra_length) = _LOCAL_HEADER.unpack_from(self._buffer)

        total = _LOCAL_HEADER.size + name_length + extra_length
        if len(self._buffer) < total:
            return False

        raw_name = bytes(self._buffer[_LOCAL_HEADER.size:_LOCAL_HEADER.size + name_length])
        extra = bytes(self._buffer[_LOCAL_HEADER.size + name_length:total])
        del self._buffer[:total]

        name = raw_name.decode('utf-8' if flags & _FLAG_UTF8 else 'cp437')
        file_size, compressed_size, zip64 = _parse_zip64_extra(extra, file_size, compressed_size)

        if flags & _FLAG_ENCRYPTED:
            raise CompressionError(f"Encrypted ZIP entries are not supported: {name}")

        entry = ArchiveEntry(
            name=name,
            compress_type=compress_type,
            crc=crc,
            compressed_size=compressed_size,
            file_size=file_size,
            date_time=_decode_date_time(dos_date, dos_time),
            has_descriptor=bool(flags & _FLAG_DATA_DESCRIPTOR),
            zip64=zip64,
        )
        if compress_type not in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
            raise CompressionError(f"Unsupported compression method {compress_type} for {name}")
        if entry.has_descriptor and compress_type == zipfile.ZIP_STORED:
            raise CompressionError(f"Cannot stream stored entry without sizes: {name}")

        self.entries_seen += 1
        self._entry = entry
        self._accepted = bool(self._should_extract(entry))
        self._chunks = []
        self._remaining = entry.compressed_size
        needs_inflate = compress_type == zipfile.ZIP_DEFLATED and (self._accepted or entry.has_descriptor)
        self._inflater = zlib.decompressobj(-15) if needs_inflate else None
        self._state = self._DATA
        return True

    def _read_data(self) -> bool:
        entry = self._entry

        if entry.has_descriptor:
            # Size unknown up front: inflate until the deflate stream ends
            if not self._buffer:
                return False
            data = bytes(self._buffer)
            self._buffer.clear()
            try:
                out = self._inflater.decompress(data)
            except zlib.error as e:
                raise CompressionError(f"Corrupt data in {entry.name}: {e}")
            if self._accepted and out:
                self._chunks.append(out)
            if not self._inflater.eof:
                return False
            self._buffer[:0] = self._inflater.unused_data
            self._state = self._DESCRIPTOR
            return True

        if self._remaining:
            if not self._buffer:
                return False
            take = min(self._remaining, len(self._buffer))
            data = bytes(self._buffer[:take])
            del self._buffer[:take]
            self._remaining -= take
            if self._accepted:
                self._consume(data)
            if self._remaining:
                return False

        self._complete_entry(entry.crc, entry.file_size)
        return True

    def _consume(self, data: bytes):
        if self._inflater is None:
            self._chunks.append(data)
            return
        try:
            out = self._inflater.decompress(data)
        except zlib.error as e:
            raise CompressionError(f"Corrupt data in {self._entry.name}: {e}")
        if out:
            self._chunks.append(out)

    def _read_descriptor(self) -> bool:
        size_width = 8 if self._entry.zip64 else 4
        if len(self._buffer) < 4:
            return False
        offset = 4 if bytes(self._buffer[:4]) == _DESCRIPTOR_SIGNATURE else 0
        needed = offset + 4 + size_width * 2
        if len(self._buffer) < needed:
            return False
        crc = struct.unpack_from('<L', self._buffer, offset)[0]
        fmt = '<Q' if size_width == 8 else '<L'
        file_size = struct.unpack_from(fmt, self._buffer, offset + 4 + size_width)[0]
        del self._buffer[:needed]
        self._complete_entry(crc, file_size)
        return True

    def _complete_entry(self, crc: int, file_size: int):
        entry = self._entry
        if self._accepted:
            if self._inflater is not None:
                try:
                    tail = self._inflater.flush()
                except zlib.error as e:
                    raise CompressionError(f"Corrupt data in {entry.name}: {e}")
                if tail:
                    self._chunks.append(tail)
            content = b''.join(self._chunks)
            if len(content) != file_size:
                raise CompressionError(
                    f"Size mismatch in {entry.name}: expected {file_size}, got {len(content)}"
                )
            if zlib.crc32(content) & 0xFFFFFFFF != crc:
                raise CompressionError(f"CRC mismatch in {entry.name}")
            self.entries_extracted += 1
            self._on_extracted(entry.name, content)

        self._entry = None
        self._accepted = False
        self._inflater = None
        self._chunks = []
        self._state = self._HEADER


def generate_archive_filename(now: Optional[datetime] = None, offset_seconds: int = 0) -> str:
    """
    Generate the archive name for a backup pass.

    Format: {year}-{month}-{day}-{seconds of day}.zip, local time, no padding

    Args:
        now: Pass start time (defaults to now)
        offset_seconds: Added to seconds-of-day to step past a taken name
    """
    if now is None:
        now = datetime.now()
    seconds_in_day = now.hour * 3600 + now.minute * 60 + now.second + offset_seconds
    return f"{now.year}-{now.month}-{now.day}-{seconds_in_day}.zip"


def piece_name(archive_name: str, index: int) -> str:
    """Name of split piece index (0 is the archive name itself)."""
    if index == 0:
        return archive_name
    return f"{archive_name}.{index:03d}"


def split_archive(data: bytes, max_size: int) -> Iterator[Tuple[int, bytes]]:
    """
    Split a finished archive into pieces of at most max_size bytes.

    Args:
        data: Archive bytes
        max_size: Piece size in bytes (0 or less for a single piece)

    Yields:
        (piece index, chunk) pairs in write order
    """
    step = max_size if max_size > 0 else len(data) + 1
    for index, chunk in enumerate(pieces(data, step)):
        yield index, chunk
