"""Backup and restore runs.

A run compares the current local tree with the current remote listing; no
state is kept between runs. Items are handled in parallel by a
:class:`ibackup.pipeline.BoundedPipeline` and their outcomes are collected in a
:class:`ibackup.models.RunSummary`.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterable, Optional, Union
from uuid import uuid4

from tqdm import tqdm

from ibackup.config import BackupConf
from ibackup.exception import ConfigurationError
from ibackup.localfs import LocalFileSystem
from ibackup.models import RunSummary, TransferOutcome
from ibackup.pipeline import BoundedPipeline, check_positive
from ibackup.storage import ObjectStore, UploadOptions
from ibackup.transfer import TransferWorker
from ibackup.walker import RemoteTreeWalker

logger = logging.getLogger(__name__)


class SyncEngine():
    """Run backups and restores against an object store.

    Parameters
    ----------
    store:
        Object store that holds the backups.
    filesystem, optional
        Local file system, by default the real one.
    options, optional
        Upload settings passed to the store.
    bounded_capacity, optional
        Maximum number of items waiting for a worker.
    max_parallelism, optional
        Number of items transferred at the same time.
    progress_bar, optional
        Whether to show a progress bar.

    Raises
    ------
    ConfigurationError:
        If `bounded_capacity` or `max_parallelism` is not a positive integer.

    Examples
    --------
    >>> engine = SyncEngine(store, bounded_capacity=100, max_parallelism=4)
    >>> summary = engine.backup("/data/photos")
    >>> print(summary)
    12 created, 0 overwritten, 3 skipped, 0 failed

    """

    def __init__(self, store: ObjectStore, filesystem: Optional[LocalFileSystem] = None,
                 options: Optional[UploadOptions] = None,
                 bounded_capacity: int = 100, max_parallelism: int = 4,
                 progress_bar: bool = False):
        self.store = store
        self.filesystem = LocalFileSystem() if filesystem is None else filesystem
        self.options = UploadOptions() if options is None else options
        self.bounded_capacity = check_positive("bounded_capacity", bounded_capacity)
        self.max_parallelism = check_positive("max_parallelism", max_parallelism)
        self.progress_bar = progress_bar
        self.cancel_event = threading.Event()

    @classmethod
    def from_config(cls, store: ObjectStore, conf: BackupConf,
                    progress_bar: bool = False) -> SyncEngine:
        """Create an engine with the settings of a configuration file."""
        return cls(store, options=conf.upload_options, bounded_capacity=conf.bounded_capacity,
                   max_parallelism=conf.max_parallelism, progress_bar=progress_bar)

    def cancel(self):
        """Stop the current run.

        No new items are started, transfers in progress are finished. The run
        returns a partial summary that is marked as cancelled. The engine stays
        cancelled, later runs return immediately. A KeyboardInterrupt during a
        run cancels the engine in the same way.
        """
        self.cancel_event.set()

    def backup(self, source: Union[str, Path]) -> RunSummary:
        """Upload all new and modified files of a directory.

        Parameters
        ----------
        source:
            Directory to back up. Its name becomes the first segment of all keys.

        Returns
        -------
            Summary of the run. Files that cannot be read are counted as failures.

        Raises
        ------
        ConfigurationError:
            If the source directory does not exist.

        """
        root = _check_directory(source)
        summary = RunSummary(uuid4().hex, str(root))
        logger.info("Starting backup of %s with run id %s", root, summary.run_id)
        worker = TransferWorker(self.store, self.filesystem, self.options, self.cancel_event)

        def _unreadable(path: Path, exc: OSError):
            logger.error("Cannot read %s: %r", path, exc)
            summary.add_failure(str(path), repr(exc))

        try:
            self._run(summary, (lambda local: worker.backup(root, local)),
                      self.filesystem.enumerate_files(root, on_error=_unreadable), root.name)
        finally:
            self._finish(summary, "Backup")
        return summary

    def backup_all(self, sources: Iterable[Union[str, Path]]) -> dict[str, RunSummary]:
        """Back up several directories one after the other.

        All directories are checked before the first backup starts.

        Returns
        -------
            Summary of each run by the directory that was backed up.

        Raises
        ------
        ConfigurationError:
            If no directories are given or one of them does not exist.

        """
        roots = [_check_directory(source) for source in sources]
        if len(roots) == 0:
            raise ConfigurationError("No source directories to back up.")
        summaries = {}
        for root in roots:
            if self.cancel_event.is_set():
                break
            summaries[str(root)] = self.backup(root)
        return summaries

    def restore(self, target: Union[str, Path]) -> RunSummary:
        """Download all objects that are missing or outdated in a directory.

        Parameters
        ----------
        target:
            Existing directory to restore into.

        Returns
        -------
            Summary of the run. A failing listing is counted as one failure for
            the prefix that could not be listed.

        Raises
        ------
        ConfigurationError:
            If the target directory does not exist.

        """
        target_dir = _check_directory(target)
        summary = RunSummary(uuid4().hex, str(target_dir))
        logger.info("Starting restore to %s with run id %s", target_dir, summary.run_id)
        worker = TransferWorker(self.store, self.filesystem, self.options, self.cancel_event)

        def _listing_failed(prefix: str, exc: Exception):
            summary.add_failure(prefix if prefix else "/", repr(exc))

        walker = RemoteTreeWalker(self.store, on_error=_listing_failed,
                                  cancel_event=self.cancel_event)
        try:
            self._run(summary, (lambda remote: worker.restore(target_dir, remote)),
                      walker.walk(), target_dir.name)
        finally:
            self._finish(summary, "Restore")
        return summary

    def _run(self, summary: RunSummary, handler, items: Iterable, desc: str):
        pbar = tqdm(unit="file", desc=desc, disable=not self.progress_bar)

        def _record(outcome: Optional[TransferOutcome]):
            if outcome is not None:
                summary.add(outcome)
                pbar.update(1)

        pipeline = BoundedPipeline(handler, self.bounded_capacity, self.max_parallelism,
                                   on_result=_record, cancel_event=self.cancel_event)
        try:
            with pipeline:
                try:
                    for item in items:
                        if not pipeline.submit(item):
                            break
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    # Items that were already submitted are still transferred
                    logger.error("Cannot enumerate the items of %s: %r", summary.source, exc)
                    summary.add_failure(summary.source, repr(exc))
        except KeyboardInterrupt:
            logger.warning("Interrupted, waiting for the transfers in progress")
            self.cancel()
            pipeline.close()
        finally:
            pbar.close()

    def _finish(self, summary: RunSummary, name: str) -> RunSummary:
        summary.cancelled = self.cancel_event.is_set()
        if summary.cancelled:
            logger.warning("%s of %s was cancelled", name, summary.source)
        for item, cause in summary.failures:
            logger.error("Failed: %s (%s)", item, cause)
        if summary.integrity_alarms:
            logger.critical("%d item(s) did not verify after transfer: %s",
                            len(summary.integrity_alarms), ", ".join(summary.integrity_alarms))
        logger.info("%s of %s finished with run id %s: %s", name, summary.source,
                    summary.run_id, summary)
        return summary


def _check_directory(path: Union[str, Path]) -> Path:
    if path is None or str(path) == "":
        raise ConfigurationError("No directory specified.")
    directory = Path(path).expanduser()
    if not directory.is_dir():
        raise ConfigurationError(f"Specified directory '{directory}' doesn't exist.")
    return directory.resolve()
