import threading

import pytest

from ibackup.exception import TransferError
from ibackup.walker import RemoteTreeWalker

KEYS = [
    "root/a.txt",
    "root/b.txt",
    "root/c.txt",
    "root/x/d.txt",
    "root/x/e.txt",
    "root/x/y/f.txt",
    "root/x/y/g.txt",
    "root/x/y/h.txt",
    "root/z/i.txt",
]


def _fill(store):
    for key in KEYS:
        store.put(key, key.encode())
    return store


def test_walk_every_leaf_once(make_store):
    store = _fill(make_store(page_size=2))
    keys = [remote.key for remote in RemoteTreeWalker(store).walk()]
    assert sorted(keys) == sorted(KEYS)
    assert len(keys) == len(set(keys))
    # Pages of two entries: continuation tokens were used.
    assert any(token is not None for _, token in store.listed)


def test_walk_depth_first(make_store):
    store = _fill(make_store(page_size=2))
    keys = [remote.key for remote in RemoteTreeWalker(store).walk("root/x/")]
    assert keys == ["root/x/y/f.txt", "root/x/y/g.txt", "root/x/y/h.txt",
                    "root/x/d.txt", "root/x/e.txt"]


def test_walk_empty(make_store):
    store = make_store()
    assert list(RemoteTreeWalker(store).walk()) == []
    assert store.listed == [("", None)]


def test_listing_error_callback(make_store):
    store = _fill(make_store(page_size=2, fail_prefixes=["root/x/"]))
    errors = []
    walker = RemoteTreeWalker(store, on_error=lambda prefix, exc: errors.append(prefix))
    keys = [remote.key for remote in walker.walk()]
    assert sorted(keys) == ["root/a.txt", "root/b.txt", "root/c.txt", "root/z/i.txt"]
    assert errors == ["root/x/"]


def test_listing_error_raises(make_store):
    store = _fill(make_store(fail_prefixes=["root/z/"]))
    with pytest.raises(TransferError):
        list(RemoteTreeWalker(store).walk())


def test_cancelled_walk(make_store):
    store = _fill(make_store())
    cancel_event = threading.Event()
    cancel_event.set()
    assert list(RemoteTreeWalker(store, cancel_event=cancel_event).walk()) == []
    assert store.listed == []
