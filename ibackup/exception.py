"""iBackup exceptions for configuration, path mapping and transfers."""


class ConfigurationError(ValueError):
    """When settings are missing or invalid, or a source/target directory is unusable."""


class PathMappingError(ValueError):
    """When a local path cannot be mapped to a key or a key to a local path."""


class TransferError(IOError):
    """When uploading or downloading a single item fails."""

    def __init__(self, item: str, message: str):
        super().__init__(f"{item}: {message}")
        self.item = item


class IntegrityAlarm(UserWarning):
    """When the fingerprint of a transferred item does not match after the transfer."""
