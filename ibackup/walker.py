"""Recursive enumeration of the objects in an object store."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator, Optional

from ibackup.models import RemoteObjectDescriptor
from ibackup.storage import EntryKind, ObjectStore

logger = logging.getLogger(__name__)


class RemoteTreeWalker():
    """Walk depth first over all objects below a prefix.

    Every virtual directory in a listing page is walked completely before the
    remaining entries of the page are visited. Each level pages through its
    listing until the store returns no continuation token.

    Parameters
    ----------
    store:
        Object store to list.
    on_error, optional
        Called with the prefix and the exception when listing a prefix fails.
        The subtree below that prefix is then abandoned and the walk continues
        with its siblings. Without a callback the exception is raised.
    cancel_event, optional
        When set, the walk stops before the next listing call.

    """

    def __init__(self, store: ObjectStore,
                 on_error: Optional[Callable[[str, Exception], None]] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.store = store
        self.on_error = on_error
        self.cancel_event = threading.Event() if cancel_event is None else cancel_event

    def walk(self, prefix: str = "") -> Iterator[RemoteObjectDescriptor]:
        """Generate the descriptors of all objects below `prefix`.

        Examples
        --------
        >>> for remote in RemoteTreeWalker(store).walk():
        >>>     print(remote.key)
        photos/a.jpg
        photos/2020/b.jpg

        """
        token = None
        while not self.cancel_event.is_set():
            try:
                page = self.store.list_page(prefix, token)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                if self.on_error is None:
                    raise
                logger.error("Listing of '%s' failed: %r", prefix, exc)
                self.on_error(prefix, exc)
                return
            for entry in page.entries:
                if entry.kind is EntryKind.PREFIX:
                    yield from self.walk(entry.prefix)
                else:
                    yield entry.remote
            token = page.next_token
            if token is None:
                return
