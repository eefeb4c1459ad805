"""Value types shared by the change detection and transfer engine."""

from __future__ import annotations

import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import NamedTuple, Optional


class LocalFileDescriptor(NamedTuple):
    """Snapshot of a local file taken at enumeration time."""

    path: Path
    size: int
    last_modified: datetime


class RemoteObjectDescriptor(NamedTuple):
    """Snapshot of a remote object, `exists` is False if there is no such object."""

    key: str
    last_modified: Optional[datetime] = None
    fingerprint: Optional[str] = None
    exists: bool = True
    size: Optional[int] = None

    @classmethod
    def missing(cls, key: str) -> RemoteObjectDescriptor:
        """Create the descriptor of a key that has no object behind it."""
        return cls(key, exists=False)


class TransferAction(Enum):
    """What to do with an item."""

    CREATE = "create"
    OVERWRITE = "overwrite"
    SKIP = "skip"


class DecisionReason(Enum):
    """Why a decision was taken."""

    NO_REMOTE_OBJECT = "no-remote-object"
    NO_LOCAL_FILE = "no-local-file"
    REMOTE_STALE = "remote-stale"
    STALE_AND_HASH_DIFFERS = "stale-and-hash-differs"
    STALE_BUT_HASH_SAME = "stale-but-hash-same"
    CURRENT = "current"


class TransferDecision(NamedTuple):
    """An action together with the reason it was chosen."""

    action: TransferAction
    reason: DecisionReason


class TransferResult(Enum):
    """Result of handling one item."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class IntegrityStatus(Enum):
    """Outcome of the post-transfer fingerprint check."""

    MATCHED = "hash matched"
    MISMATCHED = "hash mismatched"
    NOT_CHECKED = "not checked"


class TransferOutcome(NamedTuple):
    """Result of one item, as produced by the TransferWorker."""

    item: str
    result: TransferResult
    action: Optional[TransferAction] = None
    error: Optional[str] = None
    integrity: IntegrityStatus = IntegrityStatus.NOT_CHECKED


class RunSummary:
    """Counts and failures of a single backup or restore run.

    Outcomes can be added from several worker threads at the same time,
    all updates are done under a lock.
    """

    def __init__(self, run_id: str, source: str = ""):
        self.run_id = run_id
        self.source = source
        self.created = 0
        self.overwritten = 0
        self.skipped = 0
        self.failed = 0
        self.failures: list[tuple[str, str]] = []
        self.integrity_alarms: list[str] = []
        self.cancelled = False
        self._lock = threading.Lock()

    def add(self, outcome: TransferOutcome):
        """Account for the outcome of one item."""
        with self._lock:
            if outcome.result is TransferResult.FAILED:
                self.failed += 1
                self.failures.append((outcome.item, str(outcome.error)))
            elif outcome.result is TransferResult.SKIPPED:
                self.skipped += 1
            elif outcome.action is TransferAction.OVERWRITE:
                self.overwritten += 1
            else:
                self.created += 1
            if outcome.integrity is IntegrityStatus.MISMATCHED:
                self.integrity_alarms.append(outcome.item)

    def add_failure(self, item: str, cause: str):
        """Record a failure that is not tied to a transfer, such as a failed listing."""
        with self._lock:
            self.failed += 1
            self.failures.append((item, cause))

    @property
    def succeeded(self) -> int:
        """Number of items that were transferred."""
        return self.created + self.overwritten

    @property
    def total(self) -> int:
        """Number of items accounted for."""
        return self.created + self.overwritten + self.skipped + self.failed

    def __str__(self) -> str:
        """Summarize the counts in one line."""
        return (f"{self.created} created, {self.overwritten} overwritten, "
                f"{self.skipped} skipped, {self.failed} failed")
