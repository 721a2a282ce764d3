"""
Follow: re-point a standby at the cluster's current primary and restart it.
"""

import threading
import time
from typing import Callable, Optional, Tuple

from .db import Connector, PostgresNode
from .errors import ConfigConflict, ConnectionFailed, ReplError, RestartFailed
from .external_ops import ExternalOperations
from .models import NodeRecord
from .recovery_conf import build_primary_conninfo, write_recovery_config
from .topology import TopologyResolver
from .utils.config import ClusterConfig
from .utils.logger import setup_logger
from .version_gate import VersionGate


class FollowProtocol:
    """Switches a standby's upstream to the live primary."""

    def __init__(
        self,
        config: ClusterConfig,
        connector: Connector,
        external_ops: ExternalOperations,
        resolver: Optional[TopologyResolver] = None,
        version_gate: Optional[VersionGate] = None,
        store_factory=None,
        clock: Callable[[], float] = time.monotonic,
        logger=None
    ):
        self.config = config
        self.connector = connector
        self.external_ops = external_ops
        self.clock = clock
        self.logger = logger or setup_logger(__name__)
        self.resolver = resolver or TopologyResolver(config, connector, store_factory, logger=self.logger)
        self.version_gate = version_gate or VersionGate(config, logger=self.logger)

    def follow(
        self,
        wait_for_primary: bool = False,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        conninfo: Optional[str] = None,
        apply_delay: Optional[str] = None
    ) -> NodeRecord:
        """
        Point the standby at the live primary and restart it.

        Args:
            wait_for_primary: Keep probing every reconnect_interval until a
                primary appears
            cancel: Event that stops the wait when set
            deadline: Clock value after which the wait gives up
            conninfo: Connection string of the standby, defaults to this node's
            apply_delay: Optional recovery_min_apply_delay

        Returns:
            Record of the primary now being followed
        """
        conninfo = conninfo or self.config.conninfo
        cancel = cancel or threading.Event()

        self.logger.info("Connecting to standby database")
        local = self.connector.connect(conninfo)
        try:
            local_version = self.version_gate.check_version(local, "standby")
            if not local.is_standby():
                raise ConfigConflict("The command should be executed on a standby node")

            self.logger.info("Discovering new master...")
            local, primary_record, primary = self._find_primary(
                local, conninfo, wait_for_primary, cancel, deadline
            )

            with primary:
                if primary.is_standby():
                    raise ConfigConflict("The node to follow should be a master")
                primary_version = self.version_gate.check_version(primary, "master")
                self.version_gate.check_major_match(local_version, primary_version, "standby", "master")
                host, port, user = primary.host, primary.port, primary.user

            self.logger.info("Changing standby's master")
            data_directory = local.get_setting('data_directory')
        finally:
            local.close()

        if not data_directory:
            raise ConfigConflict("Unable to determine data directory")

        primary_conninfo = build_primary_conninfo(host, port, user, self.config.node_name)
        write_recovery_config(data_directory, local_version, primary_conninfo,
                              apply_delay=apply_delay, slot_name=self.config.slot_name,
                              logger=self.logger)

        self.logger.info(f"Restarting server in {data_directory}")
        status = self.external_ops.service_restart(data_directory)
        if status != 0:
            raise RestartFailed(f"Can't restart server (exit status {status})")

        self.logger.info(f"Now following node {primary_record.id} ({primary_record.name})")
        return primary_record

    def _find_primary(
        self,
        local: Optional[PostgresNode],
        conninfo: str,
        wait_for_primary: bool,
        cancel: threading.Event,
        deadline: Optional[float]
    ) -> Tuple[PostgresNode, NodeRecord, PostgresNode]:
        """Returns (local connection, primary record, primary connection)."""
        try:
            while True:
                if local is not None and not local.is_alive():
                    local.close()
                    local = None
                if local is None:
                    try:
                        local = self.connector.connect(conninfo, timeout=self.config.master_response_timeout)
                    except ConnectionFailed as e:
                        if not wait_for_primary:
                            raise
                        self.logger.warning(f"Lost connection to standby, retrying: {e}")

                if local is not None:
                    found = self.resolver.resolve_primary_record(local, exclude_node_id=self.config.node_id)
                    if found is not None:
                        record, primary = found
                        return local, record, primary

                if not wait_for_primary:
                    raise ConfigConflict("There isn't a master to follow in this cluster")
                if deadline is not None and self.clock() >= deadline:
                    raise ConfigConflict("Gave up waiting for a master to follow")
                self.logger.debug(f"No master found, retrying in {self.config.reconnect_interval}s")
                if cancel.wait(self.config.reconnect_interval):
                    raise ConfigConflict("Waiting for a master was cancelled")
        except ReplError:
            if local is not None:
                local.close()
            raise
