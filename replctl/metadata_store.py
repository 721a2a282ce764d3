"""
Access to the cluster metadata kept inside the replicated database:
the node table, the monitoring history and the status view.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from psycopg2 import sql

from .db import PostgresNode
from .errors import QueryFailed, WriteFailed
from .models import NodeRecord, NodeType
from .utils.logger import setup_logger

NODES_TABLE = "repl_nodes"
MONITOR_TABLE = "repl_monitor"
STATUS_VIEW = "repl_status"

SCHEMA_DDL = [
    "CREATE SCHEMA {schema}",
    """
    CREATE TABLE {schema}.repl_nodes (
      id               INTEGER PRIMARY KEY,
      type             TEXT    NOT NULL CHECK (type IN ('primary', 'standby', 'witness')),
      upstream_node_id INTEGER NULL REFERENCES {schema}.repl_nodes (id),
      cluster          TEXT    NOT NULL,
      name             TEXT    NOT NULL,
      conninfo         TEXT    NOT NULL,
      slot_name        TEXT    NULL,
      priority         INTEGER NOT NULL,
      active           BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE {schema}.repl_monitor (
      primary_node                INTEGER NOT NULL,
      standby_node                INTEGER NOT NULL,
      last_monitor_time           TIMESTAMP WITH TIME ZONE NOT NULL,
      last_apply_time             TIMESTAMP WITH TIME ZONE,
      last_wal_primary_location   TEXT NOT NULL,
      last_wal_standby_location   TEXT,
      replication_lag             BIGINT NOT NULL,
      apply_lag                   BIGINT NOT NULL
    )
    """,
    """
    CREATE VIEW {schema}.repl_status AS
      SELECT m.primary_node, m.standby_node, n.name AS standby_name,
             n.type AS node_type, n.active, m.last_monitor_time,
             CASE WHEN n.type = 'standby' THEN m.last_wal_primary_location ELSE NULL END AS last_wal_primary_location,
             m.last_wal_standby_location,
             CASE WHEN n.type = 'standby' THEN pg_catalog.pg_size_pretty(m.replication_lag) ELSE NULL END AS replication_lag,
             CASE WHEN n.type = 'standby' THEN pg_catalog.age(pg_catalog.now(), m.last_apply_time) ELSE NULL END AS replication_time_lag,
             CASE WHEN n.type = 'standby' THEN pg_catalog.pg_size_pretty(m.apply_lag) ELSE NULL END AS apply_lag,
             pg_catalog.age(pg_catalog.now(), m.last_monitor_time) AS communication_time_lag
        FROM {schema}.repl_monitor m
        JOIN {schema}.repl_nodes n ON m.standby_node = n.id
       WHERE (m.standby_node, m.last_monitor_time) IN (
               SELECT m1.standby_node, MAX(m1.last_monitor_time)
                 FROM {schema}.repl_monitor m1 GROUP BY 1
             )
    """,
    "CREATE INDEX idx_repl_status_sort ON {schema}.repl_monitor (last_monitor_time, standby_node)",
]


class MetadataStore(ABC):
    """Typed operations on one cluster's metadata."""

    cluster_name: str

    @abstractmethod
    def schema_exists(self) -> bool:
        ...

    @abstractmethod
    def create_schema(self) -> None:
        ...

    @abstractmethod
    def get_node_records(self) -> List[NodeRecord]:
        """All records of this cluster, ordered by id."""

    @abstractmethod
    def insert_node_record(self, record: NodeRecord) -> None:
        ...

    @abstractmethod
    def delete_node_record(self, node_id: int) -> int:
        ...

    @abstractmethod
    def truncate_node_records(self) -> None:
        ...

    @abstractmethod
    def delete_monitor_records_older_than(self, days: int) -> int:
        ...

    @abstractmethod
    def truncate_monitor_records(self) -> None:
        ...

    @abstractmethod
    def vacuum_monitor_records(self) -> None:
        ...

    def get_node_record(self, node_id: int) -> Optional[NodeRecord]:
        for record in self.get_node_records():
            if record.id == node_id:
                return record
        return None


class PostgresMetadataStore(MetadataStore):
    """MetadataStore backed by the replctl_<cluster> schema on a live server."""

    def __init__(self, node: PostgresNode, schema_name: str, cluster_name: str, logger=None):
        self.node = node
        self.schema_name = schema_name
        self.cluster_name = cluster_name
        self.logger = logger or setup_logger(__name__)

    def _table(self, table: str) -> sql.Composed:
        return sql.SQL("{}.{}").format(sql.Identifier(self.schema_name), sql.Identifier(table))

    def schema_exists(self) -> bool:
        return bool(self.node.fetch_value(
            "SELECT EXISTS (SELECT 1 FROM pg_catalog.pg_namespace WHERE nspname = %s)",
            (self.schema_name,)
        ))

    def create_schema(self) -> None:
        self.logger.info(f"Creating database objects inside the {self.schema_name} schema")
        schema = sql.Identifier(self.schema_name)
        for statement in SCHEMA_DDL:
            try:
                self.node.execute(sql.SQL(statement).format(schema=schema))
            except QueryFailed as e:
                raise WriteFailed(f"Cannot create schema {self.schema_name}: {e}") from e

    def get_node_records(self) -> List[NodeRecord]:
        query = sql.SQL(
            "SELECT id, type, upstream_node_id, cluster, name, conninfo, slot_name, priority, active "
            "  FROM {} WHERE cluster = %s ORDER BY id"
        ).format(self._table(NODES_TABLE))
        rows = self.node.fetch(query, (self.cluster_name,))
        return [
            NodeRecord(
                id=row[0],
                type=NodeType(row[1]),
                upstream_node_id=row[2],
                cluster_name=row[3],
                name=row[4],
                conninfo=row[5],
                slot_name=row[6],
                priority=row[7],
                active=row[8],
            )
            for row in rows
        ]

    def insert_node_record(self, record: NodeRecord) -> None:
        query = sql.SQL(
            "INSERT INTO {} (id, type, upstream_node_id, cluster, name, conninfo, slot_name, priority, active) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)"
        ).format(self._table(NODES_TABLE))
        try:
            self.node.execute(query, (
                record.id,
                record.type.value,
                record.upstream_node_id,
                record.cluster_name,
                record.name,
                record.conninfo,
                record.slot_name,
                record.priority,
                record.active,
            ))
        except QueryFailed as e:
            raise WriteFailed(f"Cannot insert node details: {e}") from e

    def delete_node_record(self, node_id: int) -> int:
        query = sql.SQL("DELETE FROM {} WHERE id = %s").format(self._table(NODES_TABLE))
        try:
            return self.node.execute(query, (node_id,))
        except QueryFailed as e:
            raise WriteFailed(f"Cannot delete node details: {e}") from e

    def truncate_node_records(self) -> None:
        try:
            self.node.execute(sql.SQL("TRUNCATE TABLE {}").format(self._table(NODES_TABLE)))
        except QueryFailed as e:
            raise WriteFailed(f"Cannot clean node details: {e}") from e

    def delete_monitor_records_older_than(self, days: int) -> int:
        query = sql.SQL(
            "DELETE FROM {} WHERE pg_catalog.age(pg_catalog.now(), last_monitor_time) >= "
            "%s * INTERVAL '1 day'"
        ).format(self._table(MONITOR_TABLE))
        return self.node.execute(query, (days,))

    def truncate_monitor_records(self) -> None:
        self.node.execute(sql.SQL("TRUNCATE TABLE {}").format(self._table(MONITOR_TABLE)))

    def vacuum_monitor_records(self) -> None:
        self.node.execute(sql.SQL("VACUUM {}").format(self._table(MONITOR_TABLE)))


def open_store(node: PostgresNode, cluster_name: str, logger=None) -> PostgresMetadataStore:
    """Metadata store for a cluster, reached through an open connection."""
    return PostgresMetadataStore(node, f"replctl_{cluster_name}", cluster_name, logger=logger)
