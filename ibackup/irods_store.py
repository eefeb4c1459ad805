"""Object store on top of an iRODS collection."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional

import irods.exception
import irods.keywords as kw
from irods.models import Collection, DataObject

from ibackup import keymap
from ibackup.exception import TransferError
from ibackup.localfs import LocalFileSystem
from ibackup.models import RemoteObjectDescriptor
from ibackup.pipeline import check_positive
from ibackup.session import Session
from ibackup.storage import (
    CreationMode,
    ListEntry,
    ListPage,
    ObjectStore,
    UploadOptions,
)

logger = logging.getLogger(__name__)

_COLL_PHASE = "c"
_DATA_PHASE = "d"


def _to_utc(modify_time: Optional[datetime]) -> Optional[datetime]:
    # python-irodsclient returns naive datetimes in UTC
    if modify_time is None:
        return None
    if modify_time.tzinfo is None:
        return modify_time.replace(tzinfo=timezone.utc)
    return modify_time.astimezone(timezone.utc)


def _parse_token(token: Optional[str]) -> tuple[str, int, Optional[str]]:
    if token is None:
        return _COLL_PHASE, 0, None
    try:
        phase, offset, *last = token.split(":", 2)
        offset = int(offset)
    except ValueError as exc:
        raise ValueError(f"Invalid continuation token '{token}'.") from exc
    if phase not in (_COLL_PHASE, _DATA_PHASE) or offset < 0:
        raise ValueError(f"Invalid continuation token '{token}'.")
    return phase, offset, (last[0] if last else None)


class IrodsObjectStore(ObjectStore):
    """Store backups as data objects in an iRODS collection.

    The key ``photos/2020/a.jpg`` is stored as the data object
    ``<container>/photos/2020/a.jpg``; the directories of the key become
    collections that are created when needed.

    Parameters
    ----------
    session:
        Connected iBackup session.
    container:
        Collection that holds the backups. A path starting with '~' or a relative
        path is taken relative to the iRODS home collection.
    page_size, optional
        Maximum number of entries per listing page.
    filesystem, optional
        Local file system to write downloads to.

    Examples
    --------
    >>> with Session(Path.home() / ".irods" / "irods_environment.json") as session:
    >>>     store = IrodsObjectStore(session, "~/backup")
    >>>     store.exists("photos/a.jpg")
    True

    """

    def __init__(self, session: Session, container: str, page_size: int = 1000,
                 filesystem: Optional[LocalFileSystem] = None):
        self.session = session
        self.page_size = check_positive("list_page_size", page_size)
        self.filesystem = LocalFileSystem() if filesystem is None else filesystem
        self.container = self._resolve(container)

    def _resolve(self, container: str) -> str:
        coll = PurePosixPath(container)
        if coll.parts and coll.parts[0] == "~":
            coll = PurePosixPath(self.session.home, *coll.parts[1:])
        elif not coll.is_absolute():
            coll = PurePosixPath(self.session.home, coll)
        return str(coll)

    @property
    def _irods(self):
        return self.session.irods_session

    def _path(self, key: str) -> str:
        keymap.key_parts(key, PurePosixPath)
        return f"{self.container}/{key}"

    def _coll_path(self, prefix: str) -> str:
        prefix = prefix.rstrip(keymap.KEY_SEPARATOR)
        if not prefix:
            return self.container
        return self._path(prefix)

    def exists(self, key: str) -> bool:
        try:
            return self._irods.data_objects.exists(self._path(key))
        except irods.exception.iRODSException as exc:
            raise TransferError(key, f"Cannot check existence: {exc!r}") from exc

    def get_metadata(self, key: str) -> RemoteObjectDescriptor:
        path = self._path(key)
        try:
            obj = self._irods.data_objects.get(path)
        except (irods.exception.DataObjectDoesNotExist,
                irods.exception.CollectionDoesNotExist):
            return RemoteObjectDescriptor.missing(key)
        except irods.exception.iRODSException as exc:
            raise TransferError(key, f"Cannot retrieve metadata: {exc!r}") from exc
        checksum = obj.checksum
        if not checksum:
            checksum = self._compute_checksum(key, path)
        return RemoteObjectDescriptor(key, _to_utc(obj.modify_time), checksum, size=obj.size)

    def _compute_checksum(self, key: str, path: str) -> Optional[str]:
        try:
            return self._irods.data_objects.get(path).chksum()
        except irods.exception.iRODSException as exc:
            logger.warning("Cannot compute the checksum of %s: %r", key, exc)
            return None

    def upload(self, key: str, stream: BinaryIO, options: UploadOptions,
               size: Optional[int] = None):
        """Upload a stream to the data object of `key`.

        If the transfer fails after it has started, the data object is removed, so
        that a partial object is never taken for an up to date backup.
        """
        path = self._path(key)
        parent = str(PurePosixPath(path).parent)
        try:
            self._irods.collections.create(parent)
            self._write(key, path, stream, options, size)
        except irods.exception.CAT_NO_ACCESS_PERMISSION as exc:
            raise TransferError(key, f"No permission to write {path}.") from exc
        except irods.exception.iRODSException as exc:
            raise TransferError(key, f"Upload to {path} failed: {exc!r}") from exc

    def _write(self, key: str, path: str, stream: BinaryIO, options: UploadOptions,
               size: Optional[int]):
        try:
            if options.use_parallel(size) and hasattr(stream, "name"):
                logger.debug("Uploading %s with %d threads", key, options.parallel_threads)
                self._irods.data_objects.put(
                    stream.name, path, **{kw.NUM_THREADS_KW: options.parallel_threads,
                                          kw.FORCE_FLAG_KW: "", kw.REG_CHKSUM_KW: ""})
            else:
                with self._irods.data_objects.open(path, "w") as handle:
                    shutil.copyfileobj(stream, handle)
        except Exception:
            self._remove_partial(key, path)
            raise

    def _remove_partial(self, key: str, path: str):
        try:
            self._irods.data_objects.unlink(path, force=True)
        except irods.exception.DataObjectDoesNotExist:
            return
        except irods.exception.iRODSException as exc:
            logger.warning("Cannot remove the partial upload of %s: %r", key, exc)
            return
        logger.warning("Removed the partial upload of %s", key)

    def download(self, key: str, local_path: Path, mode: CreationMode,
                 options: Optional[UploadOptions] = None):
        """Download the data object of `key` to a local file.

        The data is written to a temporary file next to `local_path`, that only
        replaces `local_path` when the download is complete.
        """
        options = UploadOptions() if options is None else options
        path = self._path(key)
        local_path = Path(local_path)
        try:
            obj = self._irods.data_objects.get(path)
            if options.use_parallel(obj.size):
                if mode is CreationMode.CREATE_NEW and local_path.exists():
                    raise FileExistsError(f"File {local_path} already exists.")
                logger.debug("Downloading %s with %d threads", key, options.parallel_threads)
                with self.filesystem.staged_write(local_path, mode) as tmp_path:
                    self._irods.data_objects.get(
                        path, str(tmp_path), **{kw.NUM_THREADS_KW: options.parallel_threads,
                                                kw.FORCE_FLAG_KW: ""})
            else:
                with obj.open("r") as handle:
                    self.filesystem.write_from_stream(local_path, handle, mode)
        except irods.exception.OVERWRITE_WITHOUT_FORCE_FLAG as exc:
            raise FileExistsError(f"File {local_path} already exists.") from exc
        except irods.exception.DataObjectDoesNotExist as exc:
            raise TransferError(key, f"Data object {path} does not exist.") from exc
        except irods.exception.CAT_NO_ACCESS_PERMISSION as exc:
            raise TransferError(key, f"No permission to read {path}.") from exc
        except irods.exception.iRODSException as exc:
            raise TransferError(key, f"Download of {path} failed: {exc!r}") from exc

    def list_page(self, prefix: str, token: Optional[str] = None) -> ListPage:
        """List one page of a collection.

        All sub-collections are listed before the data objects. The token
        records which of the two is being paged and the query offset.
        """
        if prefix and not prefix.endswith(keymap.KEY_SEPARATOR):
            prefix += keymap.KEY_SEPARATOR
        coll = self._coll_path(prefix)
        phase, offset, last_name = _parse_token(token)
        try:
            if phase == _COLL_PHASE:
                return self._list_collections(coll, prefix, offset)
            return self._list_data_objects(coll, prefix, offset, last_name)
        except irods.exception.iRODSException as exc:
            raise TransferError(prefix or "/", f"Listing of {coll} failed: {exc!r}") from exc

    def _list_collections(self, coll: str, prefix: str, offset: int) -> ListPage:
        query = (self._irods.query(Collection.name)
                 .filter(Collection.parent_name == coll)
                 .order_by(Collection.name)
                 .offset(offset).limit(self.page_size))
        rows = list(query.get_results())
        names = [PurePosixPath(row[Collection.name]).name for row in rows]
        entries = [ListEntry.virtual_prefix(f"{prefix}{name}{keymap.KEY_SEPARATOR}")
                   for name in names]
        if len(rows) < self.page_size:
            return ListPage(entries, f"{_DATA_PHASE}:0")
        return ListPage(entries, f"{_COLL_PHASE}:{offset + len(rows)}")

    def _list_data_objects(self, coll: str, prefix: str, offset: int,
                           last_name: Optional[str]) -> ListPage:
        query = (self._irods.query(DataObject.name, DataObject.modify_time,
                                   DataObject.checksum, DataObject.size)
                 .filter(Collection.name == coll)
                 .order_by(DataObject.name)
                 .offset(offset).limit(self.page_size))
        rows = [(row[DataObject.name], row[DataObject.modify_time], row[DataObject.checksum],
                 row[DataObject.size]) for row in query.get_results()]

        # One row per replica
        remotes: dict[str, RemoteObjectDescriptor] = {}
        for name, modify_time, checksum, size in rows:
            if name == last_name:
                continue
            key = prefix + name
            if name in remotes:
                if remotes[name].fingerprint is None and checksum:
                    remotes[name] = remotes[name]._replace(fingerprint=checksum)
                continue
            remotes[name] = RemoteObjectDescriptor(
                key, _to_utc(modify_time), checksum or None, size=size)
        entries = []
        for name, remote in remotes.items():
            if remote.fingerprint is None:
                remote = remote._replace(
                    fingerprint=self._compute_checksum(remote.key, f"{coll}/{name}"))
            entries.append(ListEntry.leaf(remote))

        if len(rows) < self.page_size:
            return ListPage(entries, None)
        last = rows[-1][0]
        return ListPage(entries, f"{_DATA_PHASE}:{offset + len(rows)}:{last}")
