import re
from pathlib import PurePosixPath, PureWindowsPath
from typing import Optional, Tuple

SAFE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_PATH_SEPARATORS = ("/", "\\", "\x00")


class ValidationError(ValueError):
    """Raised for malformed or unsafe client input."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidPathError(ValidationError):
    """Raised when a folder or filename fails validation."""


def _is_absolute(value: str) -> bool:
    return PurePosixPath(value).is_absolute() or PureWindowsPath(value).is_absolute()


def validate_folder(folder: Optional[str]) -> str:
    if not folder:
        raise InvalidPathError("Folder name is required")

    if not isinstance(folder, str) or _is_absolute(folder) or ".." in folder or folder.startswith("."):
        raise InvalidPathError("Invalid folder path")

    if not SAFE_NAME_PATTERN.match(folder):
        raise InvalidPathError("Invalid folder name")

    return folder


def validate_filename(filename: Optional[str]) -> str:
    """Validate a filename stored inside a folder.

    Only the part before the first ``.`` must match the safe-name grammar;
    the extension suffix is accepted as-is apart from path separators and
    NUL bytes, which are rejected anywhere in the name.
    """

    if not filename:
        raise InvalidPathError("Filename is required")

    if (
        not isinstance(filename, str)
        or _is_absolute(filename)
        or ".." in filename
        or filename.startswith(".")
        or any(separator in filename for separator in _PATH_SEPARATORS)
    ):
        raise InvalidPathError("Invalid file path")

    base = filename.split(".", 1)[0]
    if not SAFE_NAME_PATTERN.match(base):
        raise InvalidPathError("Invalid filename")

    return filename


def validate_path(
    folder: Optional[str], filename: Optional[str] = None, *, require_file: bool = False
) -> Tuple[str, Optional[str]]:
    """Validate a logical (folder, filename) pair and return it unchanged.

    The folder is checked first so callers always see the folder error when
    both segments are invalid. ``require_file`` turns a missing filename into
    an error instead of addressing the folder itself.
    """

    safe_folder = validate_folder(folder)
    if filename is None and not require_file:
        return safe_folder, None
    return safe_folder, validate_filename(filename)


def build_public_url(base_url: str, folder: str, filename: Optional[str] = None) -> str:
    base = (base_url or "").rstrip("/")
    if filename:
        return f"{base}/public/{folder}/{filename}"
    return f"{base}/public/{folder}/"
