"""Interface to the ibackup configuration file."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Union

from ibackup.exception import ConfigurationError
from ibackup.pipeline import check_positive
from ibackup.storage import (
    DEFAULT_PARALLEL_THREADS,
    DEFAULT_SINGLE_UPLOAD_THRESHOLD,
    UploadOptions,
)

IBACKUP_DIR = Path.home() / ".ibackup"
IBACKUP_CONFIG_FP = IBACKUP_DIR / "ibackup.json"
DEFAULT_IENV_PATH = Path.home() / ".irods" / "irods_environment.json"

LOG_LEVELS = ("debug", "info", "warn", "error", "critical")


def default_config() -> dict:
    """Create the contents of a new configuration file."""
    return {
        "irods_env": str(DEFAULT_IENV_PATH),
        "container": "~/backup",
        "upload": {
            "parallel_threads": DEFAULT_PARALLEL_THREADS,
            "single_upload_threshold": DEFAULT_SINGLE_UPLOAD_THRESHOLD,
        },
        "pipeline": {
            "bounded_capacity": 100,
            "max_parallelism": 4,
        },
        "list_page_size": 1000,
        "sources": [],
        "log_dir": str(IBACKUP_DIR),
        "verbose": "info",
    }


class BackupConf():
    """Interface to the ibackup configuration file.

    The configuration is a JSON file with the connection and transfer settings.
    If the file does not exist, a file with the default settings is created.

    Parameters
    ----------
    config_fp, optional
        Path to configuration file, by default ~/.ibackup/ibackup.json

    Raises
    ------
    ConfigurationError:
        If the file cannot be parsed or contains invalid settings.

    Examples
    --------
    >>> conf = BackupConf()
    >>> conf.container
    '~/backup'

    """

    def __init__(self, config_fp: Union[str, Path] = IBACKUP_CONFIG_FP):
        self.config_fp = Path(config_fp)
        try:
            with open(self.config_fp, "r", encoding="utf-8") as handle:
                self.data = json.load(handle)
        except FileNotFoundError:
            self.reset()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ConfigurationError(
                f"Cannot read ibackup configuration file {self.config_fp}: {exc}") from exc
        self.validate()

    def reset(self):
        """Reset the configuration file to its defaults."""
        self.data = default_config()
        self.save()

    def save(self):
        """Save the configuration back to the configuration file."""
        self.config_fp.parent.mkdir(exist_ok=True, parents=True)
        with open(self.config_fp, "w", encoding="utf-8") as handle:
            json.dump(self.data, handle, indent=4)

    def validate(self):
        """Check that all settings are present and have the right type.

        Raises
        ------
        ConfigurationError:
            If a setting is missing or invalid.

        """
        if not isinstance(self.data, dict):
            raise ConfigurationError(f"{self.config_fp}: configuration should be a dictionary.")
        for key in ["irods_env", "container"]:
            if not isinstance(self.data.get(key), str) or not self.data[key]:
                raise ConfigurationError(f"{self.config_fp}: '{key}' should be a non-empty "
                                         "string.")
        pipeline = self._section("pipeline")
        for key in ["bounded_capacity", "max_parallelism"]:
            if key not in pipeline:
                raise ConfigurationError(f"{self.config_fp}: 'pipeline.{key}' is required.")
            check_positive(key, pipeline[key])
        upload = self._section("upload", required=False)
        check_positive("parallel_threads",
                       upload.get("parallel_threads", DEFAULT_PARALLEL_THREADS))
        check_positive("single_upload_threshold",
                       upload.get("single_upload_threshold", DEFAULT_SINGLE_UPLOAD_THRESHOLD))
        check_positive("list_page_size", self.data.get("list_page_size", 1000))
        sources = self.data.get("sources", [])
        if not isinstance(sources, list) or not all(isinstance(s, str) for s in sources):
            raise ConfigurationError(f"{self.config_fp}: 'sources' should be a list of paths.")
        if self.verbose not in LOG_LEVELS:
            raise ConfigurationError(f"{self.config_fp}: 'verbose' should be one of "
                                     f"{', '.join(LOG_LEVELS)}, not '{self.verbose}'.")

    def _section(self, name: str, required: bool = True) -> dict[str, Any]:
        section = self.data.get(name)
        if section is None and not required:
            return {}
        if not isinstance(section, dict):
            raise ConfigurationError(f"{self.config_fp}: '{name}' should be a dictionary.")
        return section

    @property
    def irods_env(self) -> Path:
        """Path to the iRODS environment file."""
        return Path(self.data["irods_env"]).expanduser()

    @property
    def container(self) -> str:
        """Collection that holds the backups."""
        return self.data["container"]

    @property
    def upload_options(self) -> UploadOptions:
        """Transfer settings for the object store."""
        upload = self._section("upload", required=False)
        return UploadOptions(
            parallel_threads=upload.get("parallel_threads", DEFAULT_PARALLEL_THREADS),
            single_upload_threshold=upload.get("single_upload_threshold",
                                               DEFAULT_SINGLE_UPLOAD_THRESHOLD),
        )

    @property
    def bounded_capacity(self) -> int:
        """Maximum number of queued items."""
        return self.data["pipeline"]["bounded_capacity"]

    @property
    def max_parallelism(self) -> int:
        """Number of parallel transfers."""
        return self.data["pipeline"]["max_parallelism"]

    @property
    def list_page_size(self) -> int:
        """Number of entries per listing page."""
        return self.data.get("list_page_size", 1000)

    @property
    def sources(self) -> list[Path]:
        """Directories to back up when none are given on the command line."""
        return [Path(src).expanduser() for src in self.data.get("sources", [])]

    @property
    def log_dir(self) -> Path:
        """Directory for the log file."""
        return Path(self.data.get("log_dir", str(IBACKUP_DIR))).expanduser()

    @property
    def verbose(self) -> str:
        """Log level name."""
        return self.data.get("verbose", "info")
