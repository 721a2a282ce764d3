"""
Server version checks: the supported minimum and pairwise major version equality.
"""

from typing import Optional

from .db import PostgresNode
from .errors import UnsupportedVersion, VersionMismatch
from .models import VersionInfo
from .utils.config import ClusterConfig
from .utils.logger import setup_logger

REPLICATION_SLOTS_MIN_VERSION = 90400
WAL_LEVEL_REPLICA_MIN_VERSION = 90600
WAL_KEEP_SIZE_MIN_VERSION = 130000
RECOVERY_SIGNAL_MIN_VERSION = 120000


def format_version_num(num: int) -> str:
    """Render a server_version_num as a human readable release (90300 -> '9.3')."""
    if num >= 100000:
        return str(num // 10000)
    return f"{num // 10000}.{(num // 100) % 100}"


class VersionGate:
    """Rejects servers the cluster cannot replicate to or from."""

    def __init__(self, config: ClusterConfig, logger=None):
        self.config = config
        self.logger = logger or setup_logger(__name__)

    def check_version(
        self,
        node: PostgresNode,
        role_label: str,
        exit_on_error: bool = True
    ) -> Optional[VersionInfo]:
        """
        Check a server against the minimum supported version.

        Args:
            node: Connected server
            role_label: How the server is referred to in messages ('master', 'standby', ...)
            exit_on_error: Raise instead of returning None

        Returns:
            The server's version, or None when it is too old and exit_on_error is False

        Raises:
            UnsupportedVersion: If the server is too old and exit_on_error is True
        """
        version = node.server_version()
        minimum = self.config.min_server_version
        if version.num < minimum:
            message = (
                f"replctl requires {role_label} to be PostgreSQL "
                f"{format_version_num(minimum)} or later (found {version.text})"
            )
            if exit_on_error:
                raise UnsupportedVersion(message)
            self.logger.error(message)
            return None

        self.logger.debug(f"{role_label} runs PostgreSQL {version.text} ({version.num})")
        return version

    def check_major_match(
        self,
        local: VersionInfo,
        peer: VersionInfo,
        local_label: str = "this node",
        peer_label: str = "master"
    ) -> None:
        """Raise VersionMismatch unless both servers share a major version."""
        if local.major != peer.major:
            raise VersionMismatch(
                f"PostgreSQL versions on {peer_label} ({peer.text}) and "
                f"{local_label} ({local.text}) must match"
            )
