"""
Error taxonomy for replctl.

Every failure a command can end with is a ReplError subclass; the CLI turns
the exception into the process exit code carried by its class.
"""

SUCCESS = 0
ERR_BAD_CONFIG = 1
ERR_BAD_RSYNC = 2
ERR_NO_RESTART = 4
ERR_DB_CON = 6
ERR_DB_QUERY = 7
ERR_PROMOTION_FAIL = 8
ERR_BAD_SSH = 12
ERR_BAD_BASEBACKUP = 14


class ReplError(Exception):
    """Base class for all replctl failures."""
    exit_code = ERR_BAD_CONFIG


class ConfigConflict(ReplError):
    """Contradictory, redundant or missing configuration."""


class SchemaMissing(ReplError):
    """The cluster metadata schema does not exist where it is required."""


class SchemaExists(ReplError):
    """The cluster metadata schema already exists."""


class UnsupportedVersion(ReplError):
    """Server version is below the supported minimum."""


class VersionMismatch(ReplError):
    """Two nodes run different major versions."""


class ConfigViolation(ReplError):
    """An upstream server setting fails a required rule."""


class AlreadyHasPrimary(ReplError):
    """A live primary is already reachable in the cluster."""


class ConnectionFailed(ReplError):
    exit_code = ERR_DB_CON


class QueryFailed(ReplError):
    exit_code = ERR_DB_QUERY


class WriteFailed(QueryFailed):
    """The metadata store rejected a write."""


class BackupFailed(ReplError):
    exit_code = ERR_BAD_BASEBACKUP


class RemoteUnreachable(ReplError):
    exit_code = ERR_BAD_SSH


class RemoteCopyFailed(ReplError):
    exit_code = ERR_BAD_RSYNC


class RestartFailed(ReplError):
    exit_code = ERR_NO_RESTART


class PromotionTimedOut(ReplError):
    exit_code = ERR_PROMOTION_FAIL
