"""Decide whether an item needs to be transferred.

Both directions compare modification times of two different clocks: the local
file system and the storage service. Clock skew between the two is not
compensated, a local clock that lags behind the service can cause a changed
file to be skipped.

Modification times of iRODS data objects have a resolution of one second, those
of local files are finer. A file that is backed up within the second it was
written looks newer than its backup on the next run and is uploaded once more.
"""

from __future__ import annotations

from typing import Optional

from ibackup.models import (
    DecisionReason,
    LocalFileDescriptor,
    RemoteObjectDescriptor,
    TransferAction,
    TransferDecision,
)


def decide_backup(local: LocalFileDescriptor, remote: RemoteObjectDescriptor) -> TransferDecision:
    """Decide whether a local file is uploaded.

    Parameters
    ----------
    local:
        The local file.
    remote:
        The remote object at the key of the local file, with the exists flag
        cleared if there is none.

    Returns
    -------
        CREATE if there is no remote object, OVERWRITE if the local file was modified
        after the remote object, SKIP otherwise. Fingerprints are not consulted.

    """
    if not remote.exists:
        return TransferDecision(TransferAction.CREATE, DecisionReason.NO_REMOTE_OBJECT)
    if remote.last_modified is None or local.last_modified > remote.last_modified:
        return TransferDecision(TransferAction.OVERWRITE, DecisionReason.REMOTE_STALE)
    return TransferDecision(TransferAction.SKIP, DecisionReason.CURRENT)


def local_is_stale(remote: RemoteObjectDescriptor, local: Optional[LocalFileDescriptor]) -> bool:
    """Whether an existing local file is older than the remote object.

    Only for stale local files :func:`decide_restore` needs the local fingerprint.
    """
    return (local is not None and remote.last_modified is not None
            and local.last_modified < remote.last_modified)


def decide_restore(remote: RemoteObjectDescriptor, local: Optional[LocalFileDescriptor],
                   local_fingerprint: Optional[str] = None) -> TransferDecision:
    """Decide whether a remote object is downloaded.

    Parameters
    ----------
    remote:
        The remote object to restore.
    local:
        The local file at the restore location, None if there is no file.
    local_fingerprint:
        Fingerprint of the local file, only used if the local file is stale. If it is
        not given for a stale file, the contents are assumed to differ.

    Returns
    -------
        CREATE if there is no local file. For a local file older than the remote
        object, OVERWRITE if the fingerprints differ and SKIP if they are equal.
        SKIP if the local file is at least as recent as the remote object.

    """
    if local is None:
        return TransferDecision(TransferAction.CREATE, DecisionReason.NO_LOCAL_FILE)
    if local_is_stale(remote, local):
        if local_fingerprint is not None and local_fingerprint == remote.fingerprint:
            return TransferDecision(TransferAction.SKIP, DecisionReason.STALE_BUT_HASH_SAME)
        return TransferDecision(TransferAction.OVERWRITE, DecisionReason.STALE_AND_HASH_DIFFERS)
    return TransferDecision(TransferAction.SKIP, DecisionReason.CURRENT)
