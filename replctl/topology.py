"""
Topology resolution: find the node currently acting as primary by probing
every registered node.

Nodes are probed one at a time in ascending id order and the first reachable
non-standby wins. Two live non-standby nodes (split-brain) are not
arbitrated; the one with the lower id is returned.
"""

from typing import List, Optional, Tuple

from .db import Connector, PostgresNode
from .errors import ConnectionFailed, QueryFailed
from .metadata_store import open_store
from .models import NodeRecord, NodeStatus, NodeType
from .utils.config import ClusterConfig
from .utils.logger import setup_logger

ROLE_MASTER = "master"
ROLE_STANDBY = "standby"
ROLE_WITNESS = "witness"
ROLE_FAILED = "FAILED"


class TopologyResolver:
    """Finds the live primary of a cluster."""

    def __init__(self, config: ClusterConfig, connector: Connector, store_factory=None, logger=None):
        """
        Args:
            config: Cluster settings
            connector: Opens connections to nodes
            store_factory: Callable (node, cluster_name) -> MetadataStore
            logger: Optional logger
        """
        self.config = config
        self.connector = connector
        self.store_factory = store_factory or open_store
        self.logger = logger or setup_logger(__name__)

    def probe_role(self, conninfo: str) -> Optional[str]:
        """Return 'master' or 'standby' for a reachable server, None otherwise."""
        probe = self._probe(conninfo)
        if probe is None:
            return None
        node, is_standby = probe
        node.close()
        return ROLE_STANDBY if is_standby else ROLE_MASTER

    def _probe(self, conninfo: str) -> Optional[Tuple[PostgresNode, bool]]:
        try:
            node = self.connector.connect(conninfo, timeout=self.config.master_response_timeout)
        except ConnectionFailed as e:
            self.logger.debug(f"Node unreachable, skipping: {e}")
            return None
        try:
            return node, node.is_standby()
        except QueryFailed as e:
            self.logger.debug(f"Unable to determine role of {conninfo}, skipping: {e}")
            node.close()
            return None

    def resolve_primary_record(
        self,
        seed: PostgresNode,
        cluster_name: Optional[str] = None,
        exclude_node_id: Optional[int] = None
    ) -> Optional[Tuple[NodeRecord, PostgresNode]]:
        """
        Find the live primary and its record.

        Args:
            seed: Any reachable node holding the cluster metadata
            cluster_name: Cluster to resolve, defaults to the configured one
            exclude_node_id: Record to ignore (a node looking for a primary other than itself)

        Returns:
            (record, open connection) or None. The caller owns the connection.
        """
        cluster_name = cluster_name or self.config.cluster_name
        store = self.store_factory(seed, cluster_name)

        for record in store.get_node_records():
            if record.type == NodeType.WITNESS or record.id == exclude_node_id:
                continue

            self.logger.debug(f"Checking role of node {record.id} ({record.conninfo})")
            probe = self._probe(record.conninfo)
            if probe is None:
                continue

            node, is_standby = probe
            if is_standby:
                node.close()
                continue

            self.logger.info(f"Node {record.id} ({record.name}) is the current master")
            return record, node

        return None

    def resolve_primary(
        self,
        seed: PostgresNode,
        cluster_name: Optional[str] = None,
        exclude_node_id: Optional[int] = None
    ) -> Optional[PostgresNode]:
        """Open connection to the live primary, or None if none is reachable."""
        found = self.resolve_primary_record(seed, cluster_name, exclude_node_id)
        if found is None:
            return None
        return found[1]

    def describe_cluster(self, seed: PostgresNode, cluster_name: Optional[str] = None) -> List[NodeStatus]:
        """Every node record with the role its server reports right now."""
        cluster_name = cluster_name or self.config.cluster_name
        store = self.store_factory(seed, cluster_name)

        statuses = []
        for record in store.get_node_records():
            role = self.probe_role(record.conninfo)
            if role is None:
                role = ROLE_FAILED
            elif record.type == NodeType.WITNESS:
                role = ROLE_WITNESS
            statuses.append(NodeStatus(record=record, role=role))
        return statuses
