"""iBackup: back up local directories to iRODS and restore them."""

from ibackup.config import BackupConf
from ibackup.engine import SyncEngine
from ibackup.irods_store import IrodsObjectStore
from ibackup.models import RunSummary
from ibackup.session import Session

__all__ = [
    "BackupConf",
    "IrodsObjectStore",
    "RunSummary",
    "Session",
    "SyncEngine",
]
