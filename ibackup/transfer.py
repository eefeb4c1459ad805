"""Transfer of single items between the local file system and the object store."""

from __future__ import annotations

import logging
import threading
import warnings
from pathlib import Path, PurePath
from typing import Optional

from ibackup import checksum, keymap
from ibackup.decision import decide_backup, decide_restore, local_is_stale
from ibackup.exception import IntegrityAlarm, PathMappingError
from ibackup.localfs import LocalFileSystem
from ibackup.models import (
    IntegrityStatus,
    LocalFileDescriptor,
    RemoteObjectDescriptor,
    TransferAction,
    TransferOutcome,
    TransferResult,
)
from ibackup.storage import CreationMode, ObjectStore, UploadOptions

logger = logging.getLogger(__name__)


class TransferWorker():
    """Upload or download one item after deciding whether it is needed.

    All exceptions raised while handling an item are converted into a FAILED
    outcome, so that a single item can never stop the other transfers. A
    fingerprint mismatch after a transfer is logged as critical and issued as an
    :class:`ibackup.exception.IntegrityAlarm` warning, but the item still
    counts as transferred.

    Parameters
    ----------
    store:
        Object store to transfer to and from.
    filesystem:
        Local file system.
    options:
        Transfer settings passed to the store.
    cancel_event:
        When set, no new transfers are started. Items for which the transfer
        had not started yet return None.

    """

    def __init__(self, store: ObjectStore, filesystem: Optional[LocalFileSystem] = None,
                 options: Optional[UploadOptions] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.store = store
        self.filesystem = LocalFileSystem() if filesystem is None else filesystem
        self.options = UploadOptions() if options is None else options
        self.cancel_event = threading.Event() if cancel_event is None else cancel_event

    def backup(self, root: Path, local: LocalFileDescriptor) -> Optional[TransferOutcome]:
        """Upload a local file if it is new or modified.

        Parameters
        ----------
        root:
            Backup root that the file is in.
        local:
            Descriptor of the local file.

        Returns
        -------
            The outcome for the file, None if the run was cancelled before the upload.

        """
        item = str(local.path)
        try:
            key = keymap.to_key(root, local.path)
            if self.cancel_event.is_set():
                return None
            remote = self.store.get_metadata(key)
            decision = decide_backup(local, remote)
            logger.debug("%s -> %s: %s (%s)", item, key, decision.action.value,
                         decision.reason.value)
            if decision.action is TransferAction.SKIP:
                return TransferOutcome(item, TransferResult.SKIPPED, decision.action)
            if self.cancel_event.is_set():
                return None
            with self.filesystem.open_read(local.path) as stream:
                self.store.upload(key, stream, self.options, size=local.size)
        except PathMappingError as exc:
            logger.error("Cannot map %s to a key: %s", item, exc)
            return TransferOutcome(item, TransferResult.FAILED, error=str(exc))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Upload of %s failed: %r", item, exc)
            return TransferOutcome(item, TransferResult.FAILED, error=repr(exc))

        integrity = self._verify(item, local.path, key)
        logger.debug("Finished upload of %s", item)
        return TransferOutcome(item, TransferResult.SUCCEEDED, decision.action,
                               integrity=integrity)

    def restore(self, target: PurePath, remote: RemoteObjectDescriptor
                ) -> Optional[TransferOutcome]:
        """Download a remote object if there is no local file or the local file is outdated.

        A local file that is older than the remote object, but has the same
        fingerprint is not downloaded again. If a new file appears at the
        local path between the decision and the download, the item is skipped.

        Parameters
        ----------
        target:
            Directory to restore into.
        remote:
            Descriptor of the remote object.

        Returns
        -------
            The outcome for the object, None if the run was cancelled before the download.

        """
        item = remote.key
        if self.cancel_event.is_set():
            return None
        try:
            lpath = Path(keymap.to_path(target, remote.key))
            local = self.filesystem.describe(lpath)
            local_fp = None
            if local_is_stale(remote, local) and remote.fingerprint:
                local_fp = checksum.fingerprint_file(
                    lpath, checksum.detect_checksum_type(remote.fingerprint))
            decision = decide_restore(remote, local, local_fp)
            logger.debug("%s -> %s: %s (%s)", item, lpath, decision.action.value,
                         decision.reason.value)
            if decision.action is TransferAction.SKIP:
                return TransferOutcome(item, TransferResult.SKIPPED, decision.action)
            if self.cancel_event.is_set():
                return None
            mode = (CreationMode.CREATE_NEW if decision.action is TransferAction.CREATE
                    else CreationMode.OVERWRITE)
            self.store.download(remote.key, lpath, mode, self.options)
        except FileExistsError:
            logger.warning("File %s was created by someone else during the restore, skipping",
                           item)
            return TransferOutcome(item, TransferResult.SKIPPED, TransferAction.CREATE)
        except PathMappingError as exc:
            logger.error("Cannot map key %s to a local path: %s", item, exc)
            return TransferOutcome(item, TransferResult.FAILED, error=str(exc))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Download of %s failed: %r", item, exc)
            return TransferOutcome(item, TransferResult.FAILED, error=repr(exc))

        integrity = self._check(item, lpath, remote.fingerprint)
        logger.debug("Finished download of %s", item)
        return TransferOutcome(item, TransferResult.SUCCEEDED, decision.action,
                               integrity=integrity)

    def _verify(self, item: str, lpath: Path, key: str) -> IntegrityStatus:
        try:
            remote = self.store.get_metadata(key)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Cannot retrieve the fingerprint of %s: %r", key, exc)
            return IntegrityStatus.NOT_CHECKED
        return self._check(item, lpath, remote.fingerprint)

    def _check(self, item: str, lpath: Path, remote_fp: Optional[str]) -> IntegrityStatus:
        if not remote_fp:
            logger.warning("No fingerprint available for %s, not verified", item)
            return IntegrityStatus.NOT_CHECKED
        try:
            equal = checksum.verify(lpath, remote_fp)
        except OSError as exc:
            logger.warning("Cannot verify %s: %r", item, exc)
            return IntegrityStatus.NOT_CHECKED
        if not equal:
            logger.critical("Hashes are not equal! %s", item)
            warnings.warn(f"Fingerprint of {item} does not match after transfer.",
                          IntegrityAlarm)
            return IntegrityStatus.MISMATCHED
        return IntegrityStatus.MATCHED
