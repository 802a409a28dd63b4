"""
In-process hierarchical store backing the live tree ("vault").

The vault exposes two views of the same directory:
- Vault: an indexed view that hides dot-prefixed entries and caches reads,
  the way the host application presents its tree.
- VaultAdapter: direct access to every path under the root, hidden
  entries included, without caching.

Paths are always vault-relative and '/'-separated.
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union


# Larger files are always read from disk
CACHE_ENTRY_LIMIT = 256 * 1024


@dataclass
class FileStat:
    """Stat result shared by the vault and the storage accessors."""
    kind: str  # 'file' or 'folder'
    mtime: int  # epoch milliseconds
    size: int
    ctime: int = 0


@dataclass
class VaultFile:
    path: str
    stat: FileStat

    @property
    def name(self) -> str:
        return self.path.rsplit('/', 1)[-1]


@dataclass
class VaultFolder:
    path: str

    @property
    def name(self) -> str:
        return self.path.rsplit('/', 1)[-1]


def _stat_of(full_path: Path) -> FileStat:
    st = full_path.stat()
    kind = 'folder' if full_path.is_dir() else 'file'
    return FileStat(
        kind=kind,
        mtime=int(st.st_mtime * 1000) if kind == 'file' else 0,
        size=st.st_size if kind == 'file' else 0,
        ctime=int(st.st_ctime * 1000) if kind == 'file' else 0,
    )


def _is_hidden(path: str) -> bool:
    return any(part.startswith('.') for part in path.split('/') if part)


class VaultAdapter:
    """Raw filesystem access relative to the vault root."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def full_path(self, path: str) -> Path:
        path = path.strip('/')
        if not path:
            return self.root
        resolved = self.root.joinpath(*path.split('/'))
        if '..' in path.split('/'):
            raise ValueError(f"Path escapes the vault: {path}")
        return resolved

    def exists(self, path: str) -> bool:
        return self.full_path(path).exists()

    def stat(self, path: str) -> Optional[FileStat]:
        full_path = self.full_path(path)
        if not full_path.exists():
            return None
        return _stat_of(full_path)

    def list(self, path: str) -> Tuple[List[str], List[str]]:
        """
        List direct children of a folder.

        Returns:
            (files, folders) as vault-relative paths
        """
        full_path = self.full_path(path)
        prefix = path.strip('/')
        files, folders = [], []
        for child in sorted(full_path.iterdir()):
            child_path = f"{prefix}/{child.name}" if prefix else child.name
            if child.is_dir():
                folders.append(child_path)
            else:
                files.append(child_path)
        return files, folders

    def read_binary(self, path: str) -> bytes:
        return self.full_path(path).read_bytes()

    def write_binary(self, path: str, data: bytes):
        full_path = self.full_path(path)
        full_path.write_bytes(data)

    def mkdir(self, path: str):
        self.full_path(path).mkdir(parents=True, exist_ok=True)

    def remove(self, path: str):
        self.full_path(path).unlink()


class Vault:
    """Indexed, cached view of the live tree."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.adapter = VaultAdapter(self.root)
        self._cache: Dict[str, Tuple[Tuple[int, int], bytes]] = {}
        self._lock = threading.Lock()

    def get_abstract_file_by_path(self, path: str) -> Optional[Union[VaultFile, VaultFolder]]:
        """Look up a visible file or folder; hidden entries resolve to None."""
        path = path.strip('/')
        if _is_hidden(path):
            return None
        full_path = self.adapter.full_path(path)
        if not full_path.exists():
            return None
        if full_path.is_dir():
            return VaultFolder(path)
        return VaultFile(path, _stat_of(full_path))

    def get_files(self) -> List[VaultFile]:
        """All visible files, sorted by path."""
        files = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith('.'))
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            for name in sorted(filenames):
                if name.startswith('.'):
                    continue
                path = name if rel_dir == '.' else f"{rel_dir}/{name}"
                files.append(VaultFile(path, _stat_of(Path(dirpath) / name)))
        return sorted(files, key=lambda f: f.path)

    def create_folder(self, path: str):
        """
        Raises:
            FileExistsError: If anything already exists at path
        """
        full_path = self.adapter.full_path(path)
        if full_path.exists():
            raise FileExistsError(f"Folder already exists: {path}")
        full_path.mkdir(parents=True)

    def create_binary(self, path: str, data: bytes) -> VaultFile:
        full_path = self.adapter.full_path(path)
        if full_path.exists():
            raise FileExistsError(f"File already exists: {path}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        self._invalidate(path)
        return VaultFile(path.strip('/'), _stat_of(full_path))

    def modify_binary(self, file: VaultFile, data: bytes):
        self.adapter.full_path(file.path).write_bytes(data)
        self._invalidate(file.path)

    def read_binary(self, file: VaultFile, cached: bool = True) -> bytes:
        """
        Read a file's content.

        Args:
            file: File to read
            cached: Serve from and populate the read cache
        """
        if not cached:
            return self.adapter.read_binary(file.path)

        st = self.adapter.full_path(file.path).stat()
        signature = (st.st_mtime_ns, st.st_size)
        with self._lock:
            hit = self._cache.get(file.path)
        if hit is not None and hit[0] == signature:
            return hit[1]

        data = self.adapter.read_binary(file.path)
        if len(data) <= CACHE_ENTRY_LIMIT:
            with self._lock:
                self._cache[file.path] = (signature, data)
        return data

    def delete(self, file: VaultFile):
        self.adapter.remove(file.path)
        self._invalidate(file.path)

    def _invalidate(self, path: str):
        with self._lock:
            self._cache.pop(path.strip('/'), None)
