import logging
import os
import shutil
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

from dotenv import load_dotenv

load_dotenv()


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILEAPI_STORAGE_ROOT", Path.cwd())
PUBLIC_DIR = _resolve_env_path("FILEAPI_PUBLIC_DIR", STORAGE_ROOT / "public")
PRIVATE_DIR = _resolve_env_path("FILEAPI_PRIVATE_DIR", STORAGE_ROOT / "private")
LOGS_DIR = _resolve_env_path("FILEAPI_LOGS_DIR", STORAGE_ROOT / "logs")

EXPOSED = "exposed"
HIDDEN = "hidden"
# Probe order for every existence check: the exposed root wins ties.
PROBE_ORDER = (EXPOSED, HIDDEN)

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".tmp"
TEMP_MAX_AGE_SECONDS = 3600

logger = logging.getLogger("fileapi.storage")


def ensure_directories() -> None:
    PUBLIC_DIR.mkdir(parents=True, exist_ok=True)
    PRIVATE_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


class ItemNotFoundError(LookupError):
    """Raised when a logical path is absent from both roots."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.message = "File not found" if kind == "file" else "Folder not found"
        super().__init__(self.message)


class StoredFile(NamedTuple):
    name: str
    size: int
    modified: float


class ResolvedItem(NamedTuple):
    visibility: str
    path: Path


class VisibilityStore:
    """Filesystem primitives over the exposed (public) and hidden (private) roots.

    Every method addresses a root by visibility. Names are expected to have
    been validated already; this class does no grammar checking.
    """

    def __init__(self, public_dir: Path, private_dir: Path) -> None:
        self._roots = {EXPOSED: Path(public_dir), HIDDEN: Path(private_dir)}

    def root(self, visibility: str) -> Path:
        try:
            return self._roots[visibility]
        except KeyError:
            raise ValueError(f"Unknown visibility: {visibility}") from None

    def path_for(self, visibility: str, folder: str, filename: Optional[str] = None) -> Path:
        path = self.root(visibility) / folder
        if filename:
            path = path / filename
        return path

    def ensure_roots(self) -> None:
        for root in self._roots.values():
            root.mkdir(parents=True, exist_ok=True)

    def ensure_folder(self, visibility: str, folder: str) -> Path:
        path = self.path_for(visibility, folder)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def exists(self, visibility: str, folder: str, filename: Optional[str] = None) -> bool:
        path = self.path_for(visibility, folder, filename)
        if filename:
            return path.is_file()
        return path.is_dir()

    def write_file(
        self,
        visibility: str,
        folder: str,
        filename: str,
        data: Union[bytes, bytearray, memoryview, BinaryIO],
    ) -> Path:
        """Write *data* to ``folder/filename``, replacing any existing file.

        Content goes to a temporary file next to the target first and is then
        moved into place, so readers never observe a partially written file.
        *data* may be a bytes-like object or a readable binary stream.
        """

        target_dir = self.ensure_folder(visibility, folder)
        target = target_dir / filename
        fd, temp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=target_dir)
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                if isinstance(data, (bytes, bytearray, memoryview)):
                    handle.write(data)
                else:
                    shutil.copyfileobj(data, handle, CHUNK_SIZE_BYTES)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(temp_path, 0o644)
            os.replace(temp_path, target)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise
        return target

    def list_files(self, visibility: str, folder: str) -> List[StoredFile]:
        """Return the regular files directly inside *folder*, sorted by name.

        Subdirectories, symlinks and dotfiles (in-flight uploads) are skipped.
        Raises ``FileNotFoundError`` when the folder itself is missing.
        """

        folder_path = self.path_for(visibility, folder)
        files: List[StoredFile] = []
        for entry in sorted(folder_path.iterdir()):
            if entry.name.startswith(".") or entry.is_symlink() or not entry.is_file():
                continue
            try:
                stats = entry.stat()
            except FileNotFoundError:
                # Removed between listing and stat.
                continue
            files.append(StoredFile(entry.name, stats.st_size, stats.st_mtime))
        return files

    def list_top_level(self, visibility: str) -> List[str]:
        root = self.root(visibility)
        if not root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def remove(self, visibility: str, folder: str, filename: Optional[str] = None) -> bool:
        """Delete a file or a whole folder. Returns False when nothing was there."""

        path = self.path_for(visibility, folder, filename)
        if filename:
            if not path.is_file():
                return False
            path.unlink(missing_ok=True)
            return True

        if not path.is_dir():
            return False
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        return True

    def move_between_roots(
        self, source: str, target: str, folder: str, filename: Optional[str] = None
    ) -> Path:
        """Relocate an item to the other root, overwriting what is there."""

        if source == target:
            raise ValueError("Source and target roots must differ")

        src = self.path_for(source, folder, filename)
        dest = self.path_for(target, folder, filename)
        return self._move(src, dest)

    def move_within_root(
        self, visibility: str, folder: str, filename: Optional[str], new_name: str
    ) -> Path:
        """Rename a folder (``filename`` is None) or a file inside its folder."""

        if filename:
            src = self.path_for(visibility, folder, filename)
            dest = self.path_for(visibility, folder, new_name)
        else:
            src = self.path_for(visibility, folder)
            dest = self.path_for(visibility, new_name)

        if src == dest:
            return dest
        return self._move(src, dest)

    def _move(self, src: Path, dest: Path) -> Path:
        # Check the source before touching the destination so a lost race
        # never clears the destination without replacing it.
        if not src.exists():
            raise FileNotFoundError(str(src))

        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.exists() and not src.samefile(dest):
            if dest.is_dir() and not dest.is_symlink():
                shutil.rmtree(dest)
            else:
                dest.unlink()
        shutil.move(str(src), str(dest))
        return dest

    def cleanup_temp_files(self, max_age_seconds: int = TEMP_MAX_AGE_SECONDS) -> int:
        """Remove temporary upload files left behind by interrupted writes."""

        removed = 0
        cutoff = time.time() - max_age_seconds

        for visibility in PROBE_ORDER:
            root = self.root(visibility)
            if not root.is_dir():
                continue
            for folder_path in root.iterdir():
                if not folder_path.is_dir():
                    continue
                for temp_file in folder_path.glob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"):
                    try:
                        if temp_file.stat().st_mtime < cutoff:
                            temp_file.unlink()
                            removed += 1
                            logger.info("temp_file_removed path=%s", temp_file)
                    except OSError as error:
                        logger.warning(
                            "temp_cleanup_failed path=%s error=%s",
                            temp_file,
                            error,
                        )

        return removed


class ItemResolver:
    """Decide which root currently holds a logical path."""

    def __init__(self, store: VisibilityStore) -> None:
        self.store = store

    def locate_all(self, folder: str, filename: Optional[str] = None) -> List[str]:
        return [
            visibility
            for visibility in PROBE_ORDER
            if self.store.exists(visibility, folder, filename)
        ]

    def resolve(self, folder: str, filename: Optional[str] = None) -> ResolvedItem:
        holders = self.locate_all(folder, filename)
        if not holders:
            raise ItemNotFoundError("file" if filename else "folder")

        if len(holders) > 1:
            logger.warning(
                "dual_existence folder=%s file=%s resolved=%s",
                folder,
                filename,
                holders[0],
            )
        visibility = holders[0]
        return ResolvedItem(visibility, self.store.path_for(visibility, folder, filename))


class FolderLocks:
    """Per-folder mutexes that serialise mutations inside one process.

    An entry lives only while some thread holds or waits on it, so the
    registry stays bounded by the number of folders in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    def _checkout(self, folder: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(folder)
            if entry is None:
                entry = self._locks[folder] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, folder: str) -> None:
        with self._guard:
            entry = self._locks[folder]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[folder]

    @contextmanager
    def hold(self, *folders: str) -> Iterator[None]:
        # Sorted acquisition keeps two-folder renames deadlock free.
        acquired: List[Tuple[str, threading.Lock]] = []
        try:
            for folder in sorted(set(folders)):
                lock = self._checkout(folder)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(folder)
                    raise
                acquired.append((folder, lock))
            yield
        finally:
            for folder, lock in reversed(acquired):
                lock.release()
                self._checkin(folder)
