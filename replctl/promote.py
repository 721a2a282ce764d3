"""
Standby promotion.

A standby moves through STANDBY -> PROMOTING and ends in PROMOTED_CONFIRMED
once it stops reporting recovery, or PROMOTION_TIMED_OUT when it has not done
so by promote_check_timeout.
"""

import time
from typing import Callable, Optional

from .db import Connector, PostgresNode
from .errors import (AlreadyHasPrimary, ConfigConflict, ConnectionFailed, QueryFailed,
                     RestartFailed)
from .external_ops import ExternalOperations
from .models import PromotionResult, PromotionState
from .topology import TopologyResolver
from .utils.config import ClusterConfig
from .utils.logger import setup_logger
from .version_gate import VersionGate


class PromotionStateMachine:
    """Promotes the local standby and waits for the server to confirm it."""

    def __init__(
        self,
        config: ClusterConfig,
        connector: Connector,
        external_ops: ExternalOperations,
        resolver: Optional[TopologyResolver] = None,
        version_gate: Optional[VersionGate] = None,
        store_factory=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger=None
    ):
        self.config = config
        self.connector = connector
        self.external_ops = external_ops
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or setup_logger(__name__)
        self.resolver = resolver or TopologyResolver(config, connector, store_factory, logger=self.logger)
        self.version_gate = version_gate or VersionGate(config, logger=self.logger)
        self.state = PromotionState.STANDBY

    def promote(self, conninfo: Optional[str] = None) -> PromotionResult:
        """
        Promote a standby.

        Args:
            conninfo: Connection string of the standby, defaults to this node's

        Returns:
            PromotionResult in PROMOTED_CONFIRMED or PROMOTION_TIMED_OUT state

        Raises:
            ConfigConflict: If the node is not a standby
            AlreadyHasPrimary: If another master is reachable
            RestartFailed: If the promote command fails
        """
        conninfo = conninfo or self.config.conninfo
        self.state = PromotionState.STANDBY

        self.logger.info("Connecting to standby database")
        with self.connector.connect(conninfo) as local:
            self.version_gate.check_version(local, "standby")

            if not local.is_standby():
                raise ConfigConflict("STANDBY PROMOTE should be executed on a standby node")

            primary = self.resolver.resolve_primary(local, exclude_node_id=self.config.node_id)
            if primary is not None:
                primary.close()
                raise AlreadyHasPrimary("There is a master already in this cluster")

            data_directory = local.get_setting('data_directory')
            if not data_directory:
                raise ConfigConflict("Unable to determine data directory")

        self.state = PromotionState.PROMOTING
        self.logger.info(f"Promoting server in {data_directory}")
        status = self.external_ops.service_promote(data_directory)
        if status != 0:
            raise RestartFailed(f"Can't promote server (exit status {status})")

        return self._wait_for_promotion(conninfo)

    def _wait_for_promotion(self, conninfo: str) -> PromotionResult:
        timeout = self.config.promote_check_timeout
        interval = self.config.promote_check_interval
        node: Optional[PostgresNode] = None
        start = self.clock()
        polls = 0

        try:
            while True:
                polls += 1
                try:
                    if node is None:
                        node = self.connector.connect(conninfo)
                    if not node.is_standby():
                        self.state = PromotionState.PROMOTED_CONFIRMED
                        break
                except (ConnectionFailed, QueryFailed) as e:
                    self.logger.warning(f"Unable to check promotion status, retrying: {e}")
                    if node is not None:
                        node.close()
                        node = None

                if self.clock() - start >= timeout:
                    self.state = PromotionState.PROMOTION_TIMED_OUT
                    break
                self.sleep(interval)
        finally:
            if node is not None:
                node.close()

        elapsed = self.clock() - start
        if self.state == PromotionState.PROMOTED_CONFIRMED:
            self.logger.info("STANDBY PROMOTE successful. You should REINDEX any hash indexes you have.")
        else:
            self.logger.error(f"Server was not promoted after {elapsed:.0f} seconds")
        return PromotionResult(state=self.state, elapsed=elapsed, polls=polls)
