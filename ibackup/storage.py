"""Interface that the engine requires from an object store.

The remote namespace is flat: objects are addressed by keys such as
``photos/2020/a.jpg``. Listings expose a virtual hierarchy by returning
prefixes (``photos/2020/``) for keys that share a path up to the next
separator. An implementation for iRODS lives in :mod:`ibackup.irods_store`.
"""

from __future__ import annotations

import abc
from abc import abstractmethod
from enum import Enum
from pathlib import Path
from typing import BinaryIO, NamedTuple, Optional

from ibackup.models import RemoteObjectDescriptor

DEFAULT_PARALLEL_THREADS = 4
DEFAULT_SINGLE_UPLOAD_THRESHOLD = 32 * 1024 * 1024


class CreationMode(Enum):
    """How a local file is created when downloading."""

    CREATE_NEW = "create_new"
    OVERWRITE = "overwrite"


class UploadOptions(NamedTuple):
    """Transfer settings for uploads and downloads.

    Objects larger than `single_upload_threshold` bytes are transferred with
    `parallel_threads` threads, smaller ones with a single stream.
    """

    parallel_threads: int = DEFAULT_PARALLEL_THREADS
    single_upload_threshold: int = DEFAULT_SINGLE_UPLOAD_THRESHOLD

    def use_parallel(self, size: Optional[int]) -> bool:
        """Whether an object of `size` bytes should be transferred in parallel."""
        return size is not None and size > self.single_upload_threshold and \
            self.parallel_threads > 1


class EntryKind(Enum):
    """Kind of entry in a listing page."""

    OBJECT = "object"
    PREFIX = "prefix"


class ListEntry(NamedTuple):
    """Entry of a listing page: either an object or a virtual directory.

    For an OBJECT entry `remote` is set, for a PREFIX entry `prefix` is set. The
    prefix ends with a separator.
    """

    kind: EntryKind
    remote: Optional[RemoteObjectDescriptor] = None
    prefix: Optional[str] = None

    @classmethod
    def leaf(cls, remote: RemoteObjectDescriptor) -> ListEntry:
        """Create an entry for an object."""
        return cls(EntryKind.OBJECT, remote=remote)

    @classmethod
    def virtual_prefix(cls, prefix: str) -> ListEntry:
        """Create an entry for a virtual directory."""
        return cls(EntryKind.PREFIX, prefix=prefix)


class ListPage(NamedTuple):
    """One page of a listing, `next_token` is None on the last page."""

    entries: list[ListEntry]
    next_token: Optional[str] = None


class ObjectStore(abc.ABC):
    """Storage capabilities needed for backup and restore.

    Implementations raise :class:`ibackup.exception.TransferError` for failed
    transfers. Any other exception is treated the same way by the engine.
    """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether an object exists for the key."""
        raise NotImplementedError()

    @abstractmethod
    def get_metadata(self, key: str) -> RemoteObjectDescriptor:
        """Get the modification time and fingerprint of an object.

        For a key without an object a descriptor with the exists flag cleared
        is returned.
        """
        raise NotImplementedError()

    @abstractmethod
    def upload(self, key: str, stream: BinaryIO, options: UploadOptions,
               size: Optional[int] = None):
        """Create or overwrite the object at `key` with the contents of `stream`.

        A failed upload must not leave a partial object at `key`.

        Parameters
        ----------
        key:
            Key of the object.
        stream:
            Binary stream opened for reading.
        options:
            Transfer settings.
        size, optional
            Size of the content in bytes, if known.

        """
        raise NotImplementedError()

    @abstractmethod
    def download(self, key: str, local_path: Path, mode: CreationMode,
                 options: Optional[UploadOptions] = None):
        """Write an object to a local file.

        A failed download leaves `local_path` as it was.

        Raises
        ------
        FileExistsError:
            If `mode` is CREATE_NEW and the local file exists.

        """
        raise NotImplementedError()

    @abstractmethod
    def list_page(self, prefix: str, token: Optional[str] = None) -> ListPage:
        """List one page of the objects and virtual directories directly under `prefix`.

        Parameters
        ----------
        prefix:
            Empty string for the top level, otherwise a prefix that ends with '/'.
        token:
            Continuation token of the previous page, None for the first page.

        """
        raise NotImplementedError()
