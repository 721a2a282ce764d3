"""
Node registration: writes a node's record into the cluster metadata, with the
fencing checks each role requires.
"""

from typing import Optional

from .db import Connector, PostgresNode
from .errors import AlreadyHasPrimary, ConfigConflict, SchemaExists, SchemaMissing
from .metadata_store import open_store
from .models import NodeRecord, NodeType
from .topology import TopologyResolver
from .utils.config import ClusterConfig
from .utils.logger import setup_logger
from .version_gate import VersionGate


class RegistrationService:
    """Creates or replaces node records."""

    def __init__(
        self,
        config: ClusterConfig,
        connector: Connector,
        resolver: Optional[TopologyResolver] = None,
        version_gate: Optional[VersionGate] = None,
        store_factory=None,
        logger=None
    ):
        self.config = config
        self.connector = connector
        self.logger = logger or setup_logger(__name__)
        self.store_factory = store_factory or open_store
        self.resolver = resolver or TopologyResolver(config, connector, self.store_factory, logger=self.logger)
        self.version_gate = version_gate or VersionGate(config, logger=self.logger)

    def register(
        self,
        role: NodeType,
        node_id: int,
        upstream_node_id: Optional[int],
        cluster_name: str,
        name: str,
        conninfo: str,
        priority: int,
        force: bool = False,
        primary: Optional[PostgresNode] = None
    ) -> NodeRecord:
        """
        Register a node.

        Args:
            role: Type of the record to write
            node_id: Node id
            upstream_node_id: Upstream id, or None to use the live primary's id
            cluster_name: Cluster the node belongs to
            name: Node label
            conninfo: Connection string of the node
            priority: Advisory failover priority
            force: Replace an existing record with the same id
            primary: Open connection to the primary (witness only)

        Returns:
            The record written
        """
        if role == NodeType.PRIMARY:
            return self.register_primary(node_id, cluster_name, name, conninfo, priority, force)
        if role == NodeType.STANDBY:
            return self.register_standby(node_id, upstream_node_id, cluster_name, name,
                                         conninfo, priority, force)
        if primary is None:
            raise ConfigConflict("Registering a witness requires a connection to the master")
        return self.register_witness(primary, node_id, upstream_node_id, cluster_name, name,
                                     conninfo, priority, force)

    def register_primary(
        self,
        node_id: int,
        cluster_name: str,
        name: str,
        conninfo: str,
        priority: int,
        force: bool = False
    ) -> NodeRecord:
        self.logger.info("Connecting to master database")
        with self.connector.connect(conninfo) as local:
            self.version_gate.check_version(local, "master")

            if local.is_standby():
                raise ConfigConflict("Server is in standby mode and cannot be registered as a master")

            store = self.store_factory(local, cluster_name)
            if not store.schema_exists():
                store.create_schema()
            else:
                if force:
                    store.delete_node_record(node_id)

                found = self.resolver.resolve_primary_record(local, cluster_name, exclude_node_id=node_id)
                if found is not None:
                    other, other_node = found
                    other_node.close()
                    raise AlreadyHasPrimary(
                        f"There is a master already in cluster {cluster_name} "
                        f"(node {other.id}, {other.name})"
                    )

                if not force:
                    raise SchemaExists(
                        f"Schema replctl_{cluster_name} already exists; use --force to re-register"
                    )

            record = NodeRecord(
                id=node_id,
                type=NodeType.PRIMARY,
                cluster_name=cluster_name,
                name=name,
                conninfo=conninfo,
                priority=priority,
            )
            store.insert_node_record(record)

        self.logger.info(f"Master node {node_id} correctly registered for cluster {cluster_name}")
        return record

    def register_standby(
        self,
        node_id: int,
        upstream_node_id: Optional[int],
        cluster_name: str,
        name: str,
        conninfo: str,
        priority: int,
        force: bool = False
    ) -> NodeRecord:
        self.logger.info("Connecting to standby database")
        with self.connector.connect(conninfo) as local:
            local_version = self.version_gate.check_version(local, "standby")

            if not local.is_standby():
                raise ConfigConflict("Server is not in standby mode; register it as a master instead")

            if not self.store_factory(local, cluster_name).schema_exists():
                raise SchemaMissing(
                    f"Schema replctl_{cluster_name} does not exist; register the master first"
                )

            found = self.resolver.resolve_primary_record(local, cluster_name)
            if found is None:
                raise ConfigConflict(
                    "Unable to find a live master; a master must be registered before a standby"
                )

        primary_record, primary = found
        with primary:
            primary_version = self.version_gate.check_version(primary, "master")
            self.version_gate.check_major_match(local_version, primary_version, "standby", "master")

            store = self.store_factory(primary, cluster_name)
            if force:
                store.delete_node_record(node_id)

            slot_name = f"replctl_slot_{node_id}" if self.config.use_replication_slots else None
            record = NodeRecord(
                id=node_id,
                type=NodeType.STANDBY,
                cluster_name=cluster_name,
                name=name,
                conninfo=conninfo,
                priority=priority,
                upstream_node_id=upstream_node_id if upstream_node_id is not None else primary_record.id,
                slot_name=slot_name,
            )
            store.insert_node_record(record)

        self.logger.info(f"Standby node {node_id} correctly registered for cluster {cluster_name}")
        return record

    def register_witness(
        self,
        primary: PostgresNode,
        node_id: int,
        upstream_node_id: Optional[int],
        cluster_name: str,
        name: str,
        conninfo: str,
        priority: int,
        force: bool = False
    ) -> NodeRecord:
        store = self.store_factory(primary, cluster_name)
        if not store.schema_exists():
            raise SchemaMissing(f"Schema replctl_{cluster_name} does not exist on the master")

        if upstream_node_id is None:
            found = self.resolver.resolve_primary_record(primary, cluster_name)
            if found is None:
                raise ConfigConflict("Unable to determine the master node id for the witness")
            primary_record, resolved = found
            resolved.close()
            upstream_node_id = primary_record.id

        if force:
            store.delete_node_record(node_id)

        record = NodeRecord(
            id=node_id,
            type=NodeType.WITNESS,
            cluster_name=cluster_name,
            name=name,
            conninfo=conninfo,
            priority=priority,
            upstream_node_id=upstream_node_id,
        )
        store.insert_node_record(record)
        self.logger.info(f"Witness node {node_id} registered for cluster {cluster_name}")
        return record
