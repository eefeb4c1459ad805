"""Mapping between local paths and remote object keys.

Keys are forward-slash separated and start with the name of the backup root,
so that ``/data/photos/2020/a.jpg`` backed up from the root ``/data/photos``
is stored under the key ``photos/2020/a.jpg``. Restoring that key into the
target ``/restore`` recreates ``/restore/photos/2020/a.jpg``, while restoring
into a target that is itself named ``photos`` does not nest the name again.
"""

from __future__ import annotations

from pathlib import Path, PurePath
from typing import Union

from ibackup.exception import PathMappingError

KEY_SEPARATOR = "/"


def _as_path(path: Union[str, PurePath]) -> PurePath:
    if isinstance(path, PurePath):
        return path
    return Path(path)


def key_parts(key: str, flavour: type = Path) -> tuple[str, ...]:
    """Split a key into its segments and validate them.

    Parameters
    ----------
    key:
        Remote object key.
    flavour:
        Path class of the file system the key will be restored to, used to detect
        segments that would be split into multiple path components.

    Returns
    -------
        The segments of the key.

    Raises
    ------
    PathMappingError:
        If the key is empty or absolute, or contains empty, '.' or '..' segments.

    """
    if not key or key.startswith(KEY_SEPARATOR):
        raise PathMappingError(f"Key '{key}' is empty or absolute.")
    parts = tuple(key.split(KEY_SEPARATOR))
    for part in parts:
        if part in ("", ".", ".."):
            raise PathMappingError(f"Key '{key}' contains an invalid segment '{part}'.")
        if len(flavour(part).parts) != 1:
            raise PathMappingError(f"Key segment '{part}' of '{key}' is not a single path name.")
    return parts


def to_key(root: Union[str, PurePath], local_path: Union[str, PurePath]) -> str:
    """Translate a local path under `root` into a remote key.

    Parameters
    ----------
    root:
        Backup root directory.
    local_path:
        Path of a file inside the root directory.

    Returns
    -------
        Key that consists of the name of the root followed by the relative path.

    Raises
    ------
    PathMappingError:
        If `local_path` is not inside `root`, or `root` has no name.

    Examples
    --------
    >>> to_key("/data/photos", "/data/photos/2020/a.jpg")
    'photos/2020/a.jpg'

    """
    root = _as_path(root)
    local_path = type(root)(local_path)
    if not root.name:
        raise PathMappingError(f"Backup root '{root}' has no name.")
    try:
        rel_parts = local_path.relative_to(root).parts
    except ValueError as exc:
        raise PathMappingError(f"Path '{local_path}' is not under '{root}'.") from exc
    if len(rel_parts) == 0 or ".." in rel_parts:
        raise PathMappingError(f"Path '{local_path}' is not a file under '{root}'.")
    return KEY_SEPARATOR.join((root.name, *rel_parts))


def to_path(target: Union[str, PurePath], key: str) -> PurePath:
    """Translate a remote key into a local path under the restore target.

    The first segment of a key is the name of the backup root. When
    the target directory already carries that name, the segment is not added
    again. A target that ends in the root name twice (``/x/photos/photos``) is
    collapsed to a single occurrence. Repeated names deeper in the key are kept.

    Parameters
    ----------
    target:
        Directory to restore into.
    key:
        Remote object key.

    Returns
    -------
        The local path, of the same path class as `target`.

    Raises
    ------
    PathMappingError:
        If the key is not valid, see :func:`key_parts`.

    Examples
    --------
    >>> to_path("/restore", "photos/a.jpg")
    PosixPath('/restore/photos/a.jpg')
    >>> to_path("/data/photos", "photos/a.jpg")
    PosixPath('/data/photos/a.jpg')

    """
    target = _as_path(target)
    parts = key_parts(key, type(target))
    root_name = parts[0]
    target_parts = target.parts
    if len(target_parts) >= 2 and target_parts[-1] == target_parts[-2] == root_name:
        target = target.parent
    if target.name == root_name and len(parts) > 1:
        parts = parts[1:]
    return target.joinpath(*parts)
