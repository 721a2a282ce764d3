"""
Monitoring history retention.
"""

from typing import Optional

from .db import Connector
from .errors import ConnectionFailed, QueryFailed
from .metadata_store import open_store
from .topology import TopologyResolver
from .utils.config import ClusterConfig
from .utils.logger import setup_logger


class RetentionService:
    """Prunes the monitoring table on the master."""

    def __init__(
        self,
        config: ClusterConfig,
        connector: Connector,
        resolver: Optional[TopologyResolver] = None,
        store_factory=None,
        logger=None
    ):
        self.config = config
        self.connector = connector
        self.logger = logger or setup_logger(__name__)
        self.store_factory = store_factory or open_store
        self.resolver = resolver or TopologyResolver(config, connector, self.store_factory, logger=self.logger)

    def cleanup(self, retain_days: int = 0) -> Optional[int]:
        """
        Delete monitoring samples.

        Args:
            retain_days: Keep samples younger than this many days; 0 deletes everything

        Returns:
            Number of deleted rows, or None when the table was truncated
        """
        self.logger.info("Connecting to database")
        with self.connector.connect(self.config.conninfo) as local:
            primary = self.resolver.resolve_primary(local)
        if primary is None:
            raise ConnectionFailed("Cluster cleanup: cannot connect to master")

        with primary:
            store = self.store_factory(primary, self.config.cluster_name)
            deleted = None
            if retain_days > 0:
                deleted = store.delete_monitor_records_older_than(retain_days)
                self.logger.info(f"Deleted {deleted} monitoring records older than {retain_days} days")
            else:
                store.truncate_monitor_records()
                self.logger.info("Monitoring history truncated")

            try:
                store.vacuum_monitor_records()
            except QueryFailed as e:
                self.logger.warning(f"Cluster cleanup: unable to vacuum the monitoring table: {e}")

        self.logger.info("Cluster cleanup finished")
        return deleted
