"""Command line tool for backing up directories to iRODS and restoring them."""

from __future__ import annotations

import argparse
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional

from ibackup.config import IBACKUP_CONFIG_FP, BackupConf
from ibackup.engine import SyncEngine
from ibackup.exception import ConfigurationError
from ibackup.irods_store import IrodsObjectStore
from ibackup.logs import init_logger
from ibackup.session import LoginError, PasswordError, interactive_auth

logger = logging.getLogger(__name__)

DESCRIPTION = """
Back up local directories to an iRODS collection, or restore them.

A backup uploads the files that are new or were modified after their last
backup. A restore downloads the data objects that are missing in the target
directory, or that are newer than the local file and have a different checksum.

Example usage:

ibackup ~/photos ~/documents
ibackup --restore ~/restored
ibackup --config ~/.ibackup/other.json
"""


def create_parser() -> argparse.ArgumentParser:
    """Create the parser for the ibackup command."""
    parser = argparse.ArgumentParser(
        prog="ibackup", description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "directory",
        help="Directories to back up (default: the configured sources), or the directory "
             "to restore into.",
        type=Path,
        nargs="*",
    )
    parser.add_argument(
        "--restore",
        help="Restore the backup into the directory instead of backing up.",
        action="store_true",
    )
    parser.add_argument(
        "--config",
        help=f"Configuration file, by default {IBACKUP_CONFIG_FP}.",
        type=Path,
        default=IBACKUP_CONFIG_FP,
    )
    parser.add_argument(
        "--no-progress",
        help="Do not show a progress bar.",
        action="store_true",
    )
    parser.add_argument(
        "--password-prompt",
        help="Ask for the iRODS password instead of using the cached password.",
        action="store_true",
    )
    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s {_version()}",
    )
    return parser


def _version() -> str:
    try:
        return version("ibackup")
    except PackageNotFoundError:
        return "unknown"


def _select_directories(parser: argparse.ArgumentParser, args: argparse.Namespace,
                        conf: BackupConf) -> list[Path]:
    if args.restore:
        if len(args.directory) != 1:
            parser.error("Restore needs exactly one target directory.")
        if not args.directory[0].expanduser().is_dir():
            parser.error(f"Target directory '{args.directory[0]}' doesn't exist.")
        return args.directory
    directories = args.directory if args.directory else conf.sources
    if not directories:
        parser.error("No directories given and no 'sources' in the configuration file "
                     f"{conf.config_fp}.")
    for directory in directories:
        if not directory.expanduser().is_dir():
            parser.error(f"Source directory '{directory}' doesn't exist.")
    return directories


def main(argv: Optional[list[str]] = None):
    """Run a backup or restore from the command line.

    Exits with status 1 if any item failed to transfer or the run was interrupted.
    An interrupted run finishes the transfers in progress and reports what was
    done until then.
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    try:
        conf = BackupConf(args.config)
    except ConfigurationError as exc:
        parser.error(str(exc))
    directories = _select_directories(parser, args, conf)
    init_logger("ibackup", conf.log_dir, conf.verbose)

    try:
        session = interactive_auth(conf.irods_env, ask_password=args.password_prompt)
    except (FileNotFoundError, LoginError, PasswordError, ConnectionError) as exc:
        logger.error("Cannot connect to iRODS: %s", exc)
        sys.exit(1)

    with session:
        store = IrodsObjectStore(session, conf.container, page_size=conf.list_page_size)
        engine = SyncEngine.from_config(store, conf, progress_bar=not args.no_progress)
        try:
            if args.restore:
                summaries = [engine.restore(directories[0])]
            else:
                summaries = list(engine.backup_all(directories).values())
        except ConfigurationError as exc:
            logger.error(str(exc))
            sys.exit(1)
        except KeyboardInterrupt:
            engine.cancel()
            logger.warning("Interrupted, stopping.")
            sys.exit(1)

    for summary in summaries:
        cancelled = " (cancelled)" if summary.cancelled else ""
        print(f"{summary.source}: {summary}{cancelled}")
    if any(summary.failed > 0 or summary.cancelled for summary in summaries):
        sys.exit(1)


if __name__ == "__main__":
    main()
