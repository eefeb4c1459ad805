"""Access to the local file system."""

from __future__ import annotations

import os
import shutil
import warnings
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Union
from uuid import uuid4

from ibackup.models import LocalFileDescriptor
from ibackup.storage import CreationMode

PARTIAL_SUFFIX = ".ibackup-part"


def _to_utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class LocalFileSystem():
    """File system operations used by backup and restore."""

    def enumerate_files(self, root: Union[str, Path],
                        on_error: Optional[Callable[[Path, OSError], None]] = None
                        ) -> Iterator[LocalFileDescriptor]:
        """Walk recursively over all files under `root`.

        Symbolic links to files and directories are ignored with a warning.

        Parameters
        ----------
        root:
            Directory to walk over.
        on_error, optional
            Called with the path and the exception for a directory that cannot be
            listed or a file that cannot be described. The walk continues with the
            other entries. Without a callback the exception is raised.

        Returns
        -------
            Generator of descriptors, taken at the moment each file is reached.

        """
        def _failed(path: Path, exc: OSError):
            if on_error is None:
                raise exc
            on_error(path, exc)

        root = Path(root)
        for cur_dir, folders, files in os.walk(
                root, onerror=lambda exc: _failed(Path(exc.filename or root), exc)):
            for fold in list(folders):
                if Path(cur_dir, fold).is_symlink():
                    warnings.warn(f"Ignoring symlink {Path(cur_dir, fold)}.")
                    folders.remove(fold)
            for cur_file in sorted(files):
                lpath = Path(cur_dir, cur_file)
                if lpath.is_symlink():
                    warnings.warn(f"Ignoring symlink {lpath}.")
                    continue
                if lpath.name.endswith(PARTIAL_SUFFIX):
                    continue
                try:
                    desc = self.describe(lpath)
                except OSError as exc:
                    _failed(lpath, exc)
                    continue
                if desc is not None:
                    yield desc

    def describe(self, path: Union[str, Path]) -> Optional[LocalFileDescriptor]:
        """Take a snapshot of a file, None if there is no file at `path`."""
        path = Path(path)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        if not path.is_file():
            return None
        return LocalFileDescriptor(path, stat.st_size, _to_utc(stat.st_mtime))

    def open_read(self, path: Union[str, Path]) -> BinaryIO:
        """Open a file for reading in binary mode."""
        return open(path, "rb")

    def exists(self, path: Union[str, Path]) -> bool:
        """Check whether `path` is an existing file."""
        return Path(path).is_file()

    def get_last_modified_utc(self, path: Union[str, Path]) -> datetime:
        """Get the modification time of a file as a timezone aware UTC datetime."""
        return _to_utc(Path(path).stat().st_mtime)

    def make_parent(self, path: Union[str, Path]):
        """Create the missing parent directories of `path`.

        Raises
        ------
        PermissionError:
            If a parent exists, but is not a directory.

        """
        parent = Path(path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except (NotADirectoryError, FileExistsError) as error:
            raise PermissionError(f"Cannot create directory {parent}") from error

    @contextmanager
    def staged_write(self, path: Union[str, Path], mode: CreationMode) -> Iterator[Path]:
        """Give a temporary path next to `path` that is moved to `path` on success.

        The caller creates the file at the temporary path.

        The file at `path` is only replaced when the block finishes without an
        error, so an interrupted transfer never leaves a partial file behind.
        Without an error the temporary file is removed as well.

        Raises
        ------
        FileExistsError:
            If `mode` is CREATE_NEW and `path` exists when the file is moved into place.

        """
        path = Path(path)
        self.make_parent(path)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex[:12]}{PARTIAL_SUFFIX}")
        try:
            yield tmp_path
            if mode is CreationMode.CREATE_NEW:
                _link_new(tmp_path, path)
            else:
                os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def write_from_stream(self, path: Union[str, Path], stream: BinaryIO, mode: CreationMode):
        """Write the contents of a stream to a file, creating parent directories.

        Raises
        ------
        FileExistsError:
            If `mode` is CREATE_NEW and the file already exists.

        """
        path = Path(path)
        if mode is CreationMode.CREATE_NEW and path.exists():
            raise FileExistsError(f"File {path} already exists.")
        with self.staged_write(path, mode) as tmp_path:
            with open(tmp_path, "xb") as handle:
                shutil.copyfileobj(stream, handle)


def _link_new(src: Path, dest: Path):
    # Hard links fail on existing files, unlike a rename
    try:
        os.link(src, dest)
    except FileExistsError:
        raise
    except OSError:
        if dest.exists():
            raise FileExistsError(f"File {dest} already exists.") from None
        os.replace(src, dest)
