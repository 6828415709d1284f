import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from .paths import (
    ValidationError,
    build_public_url,
    validate_filename,
    validate_folder,
    validate_path,
)
from .storage import (
    EXPOSED,
    HIDDEN,
    PROBE_ORDER,
    FolderLocks,
    ItemNotFoundError,
    ItemResolver,
    VisibilityStore,
)

logger = logging.getLogger("fileapi.engine")

RENAME_KINDS = ("file", "folder")


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


class StorageEngine:
    """Folder and file operations over the exposed/hidden roots.

    Visibility is a two-state machine per folder: ``hidden`` and ``exposed``.
    Creation sets the initial state, ``expose_folder``/``unexpose_folder``
    are the only transitions. Every existence check goes through the
    resolver, so the exposed root wins whenever an item is found in both.

    Each result is a plain dict carrying ``visibility``, ``url``, ``folder``
    and ``file`` so the HTTP layer can build its envelope directly.
    """

    def __init__(
        self,
        store: VisibilityStore,
        public_url: str,
        locks: Optional[FolderLocks] = None,
    ) -> None:
        self.store = store
        self.resolver = ItemResolver(store)
        self.public_url = public_url
        self.locks = locks or FolderLocks()

    def _url(self, visibility: str, folder: str, filename: Optional[str] = None) -> Optional[str]:
        if visibility != EXPOSED:
            return None
        return build_public_url(self.public_url, folder, filename)

    def _result(
        self, visibility: str, folder: str, filename: Optional[str] = None, **extra
    ) -> Dict[str, object]:
        result: Dict[str, object] = {
            "visibility": visibility,
            "url": self._url(visibility, folder, filename),
            "folder": folder,
            "file": filename,
        }
        result.update(extra)
        return result

    def create_folder(self, folder: str, expose: bool = False) -> Dict[str, object]:
        safe_folder, _ = validate_path(folder)
        visibility = EXPOSED if expose else HIDDEN

        with self.locks.hold(safe_folder):
            self.store.ensure_folder(visibility, safe_folder)

        logger.info("folder_created folder=%s visibility=%s", safe_folder, visibility)
        return self._result(visibility, safe_folder)

    def store_file(
        self,
        folder: str,
        filename: str,
        data,
        expose: bool = False,
    ) -> Dict[str, object]:
        """Write a file into the root matching *expose*, overwriting any existing one.

        The folder is created in that root when missing. A folder of the same
        name in the other root is left untouched; the resolver's precedence
        decides which copy later operations see.
        """

        safe_folder, safe_filename = validate_path(folder, filename, require_file=True)
        visibility = EXPOSED if expose else HIDDEN

        with self.locks.hold(safe_folder):
            self.store.write_file(visibility, safe_folder, safe_filename, data)

        logger.info(
            "file_stored folder=%s file=%s visibility=%s",
            safe_folder,
            safe_filename,
            visibility,
        )
        return self._result(visibility, safe_folder, safe_filename)

    def delete_item(self, folder: str, filename: Optional[str] = None) -> Dict[str, object]:
        """Remove a file or a whole folder from every root that holds it."""

        safe_folder, safe_filename = validate_path(folder, filename)
        kind = "file" if safe_filename else "folder"

        with self.locks.hold(safe_folder):
            holders = self.resolver.locate_all(safe_folder, safe_filename)
            if not holders:
                raise ItemNotFoundError(kind)
            for visibility in holders:
                self.store.remove(visibility, safe_folder, safe_filename)

        logger.info(
            "%s_deleted folder=%s file=%s roots=%s",
            kind,
            safe_folder,
            safe_filename,
            ",".join(holders),
        )
        return self._result(HIDDEN, safe_folder, safe_filename, deleted_kind=kind)

    def rename_item(
        self,
        kind: str,
        folder: str,
        filename: Optional[str],
        new_name: str,
    ) -> Dict[str, object]:
        """Rename inside the root currently holding the item.

        Visibility never changes on rename; only the URL is recomputed. An
        existing item with the new name in that root is overwritten.
        """

        if kind not in RENAME_KINDS:
            raise ValidationError('Type must be "file" or "folder"')

        if kind == "file":
            if not filename:
                raise ValidationError('Filename is required when type is "file"')
            safe_folder, safe_filename = validate_path(folder, filename, require_file=True)
            safe_new_name = validate_filename(new_name)
            lock_keys = (safe_folder,)
        else:
            safe_folder, safe_filename = validate_path(folder)
            safe_new_name = validate_folder(new_name)
            lock_keys = (safe_folder, safe_new_name)

        with self.locks.hold(*lock_keys):
            resolved = self.resolver.resolve(safe_folder, safe_filename)
            try:
                self.store.move_within_root(
                    resolved.visibility, safe_folder, safe_filename, safe_new_name
                )
            except FileNotFoundError:
                raise ItemNotFoundError(kind) from None

        logger.info(
            "%s_renamed folder=%s file=%s new_name=%s visibility=%s",
            kind,
            safe_folder,
            safe_filename,
            safe_new_name,
            resolved.visibility,
        )
        if kind == "file":
            return self._result(resolved.visibility, safe_folder, safe_new_name)
        return self._result(resolved.visibility, safe_new_name)

    def expose_folder(self, folder: str) -> Dict[str, object]:
        return self._transition(folder, EXPOSED)

    def unexpose_folder(self, folder: str) -> Dict[str, object]:
        return self._transition(folder, HIDDEN)

    def _transition(self, folder: str, target: str) -> Dict[str, object]:
        safe_folder, _ = validate_path(folder)

        with self.locks.hold(safe_folder):
            resolved = self.resolver.resolve(safe_folder)
            if resolved.visibility == target:
                logger.info("folder_already_%s folder=%s", target, safe_folder)
            else:
                try:
                    self.store.move_between_roots(resolved.visibility, target, safe_folder)
                except FileNotFoundError:
                    raise ItemNotFoundError("folder") from None
                logger.info(
                    "folder_%s folder=%s from=%s",
                    "exposed" if target == EXPOSED else "unexposed",
                    safe_folder,
                    resolved.visibility,
                )

        return self._result(target, safe_folder)

    def list_folder(self, folder: str) -> Dict[str, object]:
        safe_folder, _ = validate_path(folder)
        resolved = self.resolver.resolve(safe_folder)

        try:
            entries = self.store.list_files(resolved.visibility, safe_folder)
        except FileNotFoundError:
            # Moved or deleted after resolution.
            raise ItemNotFoundError("folder") from None

        files: List[Dict[str, Union[str, int]]] = [
            {
                "name": entry.name,
                "size": entry.size,
                "modified": isoformat_utc(entry.modified),
            }
            for entry in entries
        ]
        return self._result(resolved.visibility, safe_folder, files=files)

    def list_root(self) -> Dict[str, object]:
        """List top-level folders of both roots, one entry per name."""

        self.store.ensure_roots()
        folders: Dict[str, Dict[str, object]] = {}
        for visibility in PROBE_ORDER:
            for name in self.store.list_top_level(visibility):
                if name in folders:
                    continue
                folders[name] = {
                    "name": name,
                    "visibility": visibility,
                    "url": self._url(visibility, name),
                }
        return {"folders": [folders[name] for name in sorted(folders)]}
