"""
In-memory stand-ins for PostgreSQL servers, the metadata store and the
external operations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from replctl.errors import ConnectionFailed, QueryFailed, WriteFailed
from replctl.external_ops import ExternalOperations
from replctl.metadata_store import MetadataStore
from replctl.models import MonitorRecord, NodeRecord, NodeType, VersionInfo

NOW = datetime(2024, 6, 1, 12, 0, 0)

REPLICATION_READY_SETTINGS = {
    'wal_level': 'replica',
    'archive_mode': 'on',
    'hot_standby': 'on',
    'max_wal_senders': '10',
    'max_replication_slots': '10',
    'wal_keep_segments': '5000',
    'wal_keep_size': '80000',
}


@dataclass
class Catalog:
    """Metadata schemas held by one server (shared by reference between replicas)."""
    schemas: Dict[str, Dict] = field(default_factory=dict)
    vacuum_count: int = 0
    fail_vacuum: bool = False

    def schema(self, name: str) -> Optional[Dict]:
        return self.schemas.get(name)

    def create(self, name: str) -> Dict:
        self.schemas[name] = {'nodes': {}, 'monitor': []}
        return self.schemas[name]


@dataclass
class FakeServer:
    conninfo: str
    standby: bool = False
    reachable: bool = True
    version_num: int = 150000
    version_text: str = "15.4"
    host: str = "db1"
    port: int = 5432
    user: str = "repl"
    data_directory: str = "/var/lib/pgsql/data"
    settings: Dict[str, str] = field(default_factory=lambda: dict(REPLICATION_READY_SETTINGS))
    config_files: Optional[List[Tuple[str, str, bool]]] = None
    tablespaces: List[str] = field(default_factory=list)
    slots: Dict[str, Tuple[str, bool]] = field(default_factory=dict)
    catalog: Catalog = field(default_factory=Catalog)
    fail_slot_creation: bool = False
    revoked: List[str] = field(default_factory=list)

    def setting(self, name: str) -> Optional[str]:
        if name == 'data_directory':
            return self.data_directory
        return self.settings.get(name)


class FakeNode:
    """Open handle on a FakeServer."""

    def __init__(self, server: FakeServer):
        self.server = server
        self.conninfo = server.conninfo
        self.closed = False

    def _check(self):
        if self.closed:
            raise QueryFailed("connection already closed")
        if not self.server.reachable:
            raise QueryFailed("server closed the connection unexpectedly")

    @property
    def host(self):
        return self.server.host

    @property
    def port(self):
        return self.server.port

    @property
    def user(self):
        return self.server.user

    def is_standby(self) -> bool:
        self._check()
        return self.server.standby

    def is_alive(self) -> bool:
        return not self.closed and self.server.reachable

    def server_version(self) -> VersionInfo:
        self._check()
        return VersionInfo(num=self.server.version_num, text=self.server.version_text)

    def get_setting(self, name: str) -> Optional[str]:
        self._check()
        return self.server.setting(name)

    def get_config_file_locations(self):
        self._check()
        if self.server.config_files is not None:
            return list(self.server.config_files)
        dd = self.server.data_directory
        return [
            ('config_file', f"{dd}/postgresql.conf", True),
            ('data_directory', dd, True),
            ('hba_file', f"{dd}/pg_hba.conf", True),
            ('ident_file', f"{dd}/pg_ident.conf", True),
        ]

    def tablespace_exists(self, location: str) -> bool:
        self._check()
        return location in self.server.tablespaces

    def cluster_size(self) -> str:
        return "42 MB"

    def create_replication_slot(self, slot_name: str) -> None:
        self._check()
        if self.server.fail_slot_creation:
            raise QueryFailed("could not create replication slot")
        existing = self.server.slots.get(slot_name)
        if existing and existing[1]:
            raise QueryFailed(f"Slot '{slot_name}' already exists as an active slot")
        self.server.slots[slot_name] = ('physical', False)

    def revoke_superuser(self, role: str) -> None:
        self._check()
        self.server.revoked.append(role)

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class FakeConnector:
    def __init__(self, *servers: FakeServer):
        self.servers: Dict[str, FakeServer] = {}
        self.opened: List[FakeNode] = []
        self.attempts: List[str] = []
        for server in servers:
            self.add(server)

    def add(self, server: FakeServer) -> FakeServer:
        self.servers[server.conninfo] = server
        return server

    def connect(self, conninfo: str, timeout: Optional[int] = None) -> FakeNode:
        self.attempts.append(conninfo)
        server = self.servers.get(conninfo)
        if server is None or not server.reachable:
            raise ConnectionFailed(f"Connection to database failed ({conninfo})")
        node = FakeNode(server)
        self.opened.append(node)
        return node

    def open_handles(self) -> List[FakeNode]:
        return [node for node in self.opened if not node.closed]


class InMemoryStore(MetadataStore):
    """MetadataStore over a server's Catalog."""

    def __init__(self, catalog: Catalog, cluster_name: str, now: datetime = NOW):
        self.catalog = catalog
        self.cluster_name = cluster_name
        self.schema_name = f"replctl_{cluster_name}"
        self.now = now

    def _schema(self) -> Dict:
        schema = self.catalog.schema(self.schema_name)
        if schema is None:
            raise QueryFailed(f"schema \"{self.schema_name}\" does not exist")
        return schema

    def schema_exists(self) -> bool:
        return self.catalog.schema(self.schema_name) is not None

    def create_schema(self) -> None:
        if self.schema_exists():
            raise WriteFailed(f"schema \"{self.schema_name}\" already exists")
        self.catalog.create(self.schema_name)

    def get_node_records(self) -> List[NodeRecord]:
        nodes = self._schema()['nodes']
        return [nodes[key] for key in sorted(nodes) if nodes[key].cluster_name == self.cluster_name]

    def insert_node_record(self, record: NodeRecord) -> None:
        nodes = self._schema()['nodes']
        if record.id in nodes:
            raise WriteFailed(f"duplicate key value violates unique constraint (id)=({record.id})")
        nodes[record.id] = record

    def delete_node_record(self, node_id: int) -> int:
        return 1 if self._schema()['nodes'].pop(node_id, None) else 0

    def truncate_node_records(self) -> None:
        self._schema()['nodes'].clear()

    def delete_monitor_records_older_than(self, days: int) -> int:
        schema = self._schema()
        horizon = self.now - timedelta(days=days)
        kept = [r for r in schema['monitor'] if r.last_monitor_time > horizon]
        deleted = len(schema['monitor']) - len(kept)
        schema['monitor'] = kept
        return deleted

    def truncate_monitor_records(self) -> None:
        self._schema()['monitor'] = []

    def vacuum_monitor_records(self) -> None:
        self._schema()
        if self.catalog.fail_vacuum:
            raise QueryFailed("VACUUM cannot run inside a transaction block")
        self.catalog.vacuum_count += 1


def memory_store_factory(node: FakeNode, cluster_name: str) -> InMemoryStore:
    return InMemoryStore(node.server.catalog, cluster_name)


def monitor_sample(standby: int, age: timedelta, primary: int = 1) -> MonitorRecord:
    return MonitorRecord(
        primary_node=primary,
        standby_node=standby,
        last_monitor_time=NOW - age,
        last_wal_primary_location="0/3000060",
        replication_lag=0,
        apply_lag=0,
    )


class FakeExternalOps(ExternalOperations):
    """Records every call; statuses can be overridden per operation."""

    def __init__(self):
        self.calls: List[Tuple] = []
        self.statuses: Dict[str, int] = {}
        self.reachable = True
        self.on_promote: Optional[Callable[[str], None]] = None
        self.on_init: Optional[Callable[[str], None]] = None

    def _record(self, name: str, *args) -> int:
        self.calls.append((name,) + args)
        return self.statuses.get(name, 0)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def run_backup(self, host, port, user, data_directory, tablespace_mapping=()):
        return self._record('run_backup', host, port, user, data_directory, tuple(tablespace_mapping))

    def remote_reachable(self, host):
        self.calls.append(('remote_reachable', host))
        return self.reachable

    def sync_files(self, host, remote_path, local_path, is_directory=False, delete=False):
        return self._record('sync_files', host, remote_path, local_path)

    def service_init(self, data_directory, options=""):
        status = self._record('service_init', data_directory, options)
        if status == 0 and self.on_init:
            self.on_init(data_directory)
        return status

    def service_start(self, data_directory):
        return self._record('service_start', data_directory)

    def service_stop(self, data_directory):
        return self._record('service_stop', data_directory)

    def service_restart(self, data_directory):
        return self._record('service_restart', data_directory)

    def service_reload(self, data_directory):
        return self._record('service_reload', data_directory)

    def service_promote(self, data_directory):
        status = self._record('service_promote', data_directory)
        if status == 0 and self.on_promote:
            self.on_promote(data_directory)
        return status

    def create_role(self, role, port, admin_user, superuser=True):
        return self._record('create_role', role, port, admin_user)

    def create_database(self, database, owner, port, admin_user):
        return self._record('create_database', database, owner, port, admin_user)


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep(self.now)


def node_record(node_id: int, type_: str, conninfo: str, upstream: Optional[int] = None,
                cluster: str = "demo", slot_name: Optional[str] = None) -> NodeRecord:
    return NodeRecord(
        id=node_id,
        type=NodeType(type_),
        cluster_name=cluster,
        name=f"node{node_id}",
        conninfo=conninfo,
        priority=100,
        upstream_node_id=upstream,
        slot_name=slot_name,
    )


def seed_cluster(catalog: Catalog, *records: NodeRecord, cluster: str = "demo") -> InMemoryStore:
    store = InMemoryStore(catalog, cluster)
    if not store.schema_exists():
        store.create_schema()
    for record in records:
        store.insert_node_record(record)
    return store
