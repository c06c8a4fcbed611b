"""
Error taxonomy for the backup lifecycle engine.

Failures are contained at the site/artifact boundary: callers catch these,
record them in the run summary, and move on to the next site.
"""


class WPFleetError(Exception):
    """Base class for all engine errors."""
    pass


class DiscoveryError(WPFleetError):
    """Raised when the sites root cannot be read. Fatal to the run."""
    pass


class SiteInvalid(WPFleetError):
    """Raised when a site's credentials cannot be parsed. The site is skipped."""
    pass


class CredentialsUnavailable(WPFleetError):
    """Raised when no database credentials can be resolved before a call."""
    pass


class CommandError(WPFleetError):
    """Raised when an external command fails, times out or is cancelled."""

    def __init__(self, message, returncode=None, stderr=''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class DumpFailed(WPFleetError):
    """Raised when the database dump of a site fails."""
    pass


class ArchiveFailed(WPFleetError):
    """Raised when the file-tree archive of a site fails."""
    pass


class InvalidArtifactName(WPFleetError, ValueError):
    """Raised when a filename does not follow the artifact naming convention."""
    pass


class StorageError(WPFleetError):
    """Raised when a remote store operation fails."""
    pass


class UploadFailed(StorageError):
    """Raised when artifacts could not be uploaded. Blocks retention for the site."""
    pass


class DownloadFailed(StorageError):
    """Raised when an artifact could not be fetched from the store."""
    pass


class DeleteFailed(StorageError):
    """Raised when a remote delete fails. Logged only during retention."""
    pass


class PromotionFailed(StorageError):
    """Raised when a promotion copy fails. Logged only during retention."""
    pass


class InconsistentArtifactSet(WPFleetError):
    """Raised when the latest database and files artifacts are too far apart."""
    pass


class RestoreStepFailed(WPFleetError):
    """Raised when a restore step fails. Carries the name of the failed step."""

    def __init__(self, step, message):
        super().__init__(f"Restore step '{step}' failed: {message}")
        self.step = step
        self.reason = message


class MigrationFailed(WPFleetError):
    """Raised when a migration push fails (unreachable host or partial transfer)."""
    pass
