import io
import threading
from datetime import datetime, timezone

import pytest

from ibackup import checksum
from ibackup.exception import TransferError
from ibackup.localfs import LocalFileSystem
from ibackup.models import RemoteObjectDescriptor
from ibackup.storage import ListEntry, ListPage, ObjectStore


class BrokenStream(io.BytesIO):
    """Stream that fails after the first few bytes."""

    def read(self, size=-1):
        if self.tell() > 0:
            raise ConnectionResetError("connection reset by peer")
        return super().read(4)


class MemoryObjectStore(ObjectStore):
    """Object store that keeps all objects in a dictionary."""

    def __init__(self, page_size=1000, fail_keys=(), fail_prefixes=()):
        self.page_size = page_size
        self.fail_keys = set(fail_keys)
        self.fail_prefixes = set(fail_prefixes)
        self.break_keys = set()
        self.objects = {}
        self.fingerprint_override = {}
        self.uploads = []
        self.downloads = []
        self.listed = []
        self._lock = threading.Lock()

    def put(self, key, data, last_modified=None):
        if last_modified is None:
            last_modified = datetime.now(timezone.utc)
        with self._lock:
            self.objects[key] = (data, last_modified)

    def exists(self, key):
        return key in self.objects

    def get_metadata(self, key):
        if key not in self.objects:
            return RemoteObjectDescriptor.missing(key)
        data, last_modified = self.objects[key]
        fingerprint = self.fingerprint_override.get(key, checksum.fingerprint(data))
        return RemoteObjectDescriptor(key, last_modified, fingerprint, size=len(data))

    def upload(self, key, stream, options, size=None):
        if key in self.fail_keys:
            raise TransferError(key, "connection reset")
        self.put(key, stream.read())
        with self._lock:
            self.uploads.append(key)

    def download(self, key, local_path, mode, options=None):
        if key in self.fail_keys:
            raise TransferError(key, "connection reset")
        data, _ = self.objects[key]
        stream = BrokenStream(data) if key in self.break_keys else io.BytesIO(data)
        LocalFileSystem().write_from_stream(local_path, stream, mode)
        with self._lock:
            self.downloads.append(key)

    def list_page(self, prefix, token=None):
        self.listed.append((prefix, token))
        if prefix in self.fail_prefixes:
            raise TransferError(prefix, "listing failed")
        prefixes = set()
        names = []
        for key in self.objects:
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if "/" in rest:
                prefixes.add(prefix + rest.split("/")[0] + "/")
            else:
                names.append(key)
        entries = [ListEntry.virtual_prefix(p) for p in sorted(prefixes)]
        entries += [ListEntry.leaf(self.get_metadata(key)) for key in sorted(names)]
        offset = 0 if token is None else int(token)
        end = offset + self.page_size
        next_token = str(end) if end < len(entries) else None
        return ListPage(entries[offset:end], next_token)


@pytest.fixture
def make_store():
    return MemoryObjectStore


@pytest.fixture
def store():
    return MemoryObjectStore()


@pytest.fixture
def source(tmp_path):
    root = tmp_path / "photos"
    (root / "2020").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"first file")
    (root / "2020" / "b.txt").write_bytes(b"second file")
    return root
