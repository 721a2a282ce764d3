from pathlib import Path

import pytest

from replctl.errors import ConfigConflict, RemoteUnreachable, RestartFailed, WriteFailed
from replctl.models import NodeType
from replctl.witness import WitnessProvisioner, upstream_order

from .conftest import PRIMARY_CONNINFO, STANDBY_CONNINFO
from .fakes import Catalog, FakeServer, InMemoryStore, memory_store_factory, node_record, seed_cluster

WITNESS_CONNINFO = "host=w1 port=5499 dbname=replctl user=repl"


@pytest.fixture
def witness_server(connector):
    return connector.add(FakeServer(WITNESS_CONNINFO, host="w1", port=5499, catalog=Catalog()))


@pytest.fixture
def provisioner(make_config, connector, ops, catalog, primary, witness_server):
    primary.settings['hba_file'] = '/etc/postgresql/15/main/pg_hba.conf'
    seed_cluster(catalog,
                 node_record(1, 'primary', PRIMARY_CONNINFO),
                 node_record(2, 'standby', STANDBY_CONNINFO, upstream=1))
    ops.on_init = lambda dd: (Path(dd) / "postgresql.conf").write_text("# initdb defaults\n")
    config = make_config(node_id=9, conninfo=WITNESS_CONNINFO, node_name="witness")
    return WitnessProvisioner(config, connector, ops, store_factory=memory_store_factory)


@pytest.fixture
def destination(tmp_path):
    return tmp_path / "witness"


def test_create_witness(provisioner, ops, catalog, witness_server, destination, connector):
    record = provisioner.create_witness(PRIMARY_CONNINFO, str(destination), username="repl",
                                        dbname="replctl", no_password_prompt=True)

    dest = str(destination)
    assert ops.calls == [
        ('remote_reachable', 'db1'),
        ('service_init', dest, '-U postgres'),
        ('service_start', dest),
        ('create_role', 'repl', 5499, 'postgres'),
        ('create_database', 'replctl', 'repl', 5499, 'postgres'),
        ('sync_files', 'db1', '/etc/postgresql/15/main/pg_hba.conf', dest),
        ('service_reload', dest),
    ]
    conf = (destination / "postgresql.conf").read_text()
    assert "port = 5499" in conf
    assert "listen_addresses = '*'" in conf

    assert record.type == NodeType.WITNESS
    assert record.upstream_node_id == 1
    on_primary = InMemoryStore(catalog, "demo").get_node_records()
    on_witness = InMemoryStore(witness_server.catalog, "demo").get_node_records()
    assert [r.id for r in on_primary] == [1, 2, 9]
    assert on_witness == on_primary
    assert witness_server.revoked == ['repl']
    assert connector.open_handles() == []


def test_default_names_skip_role_and_database(provisioner, ops, witness_server, destination):
    provisioner.create_witness(PRIMARY_CONNINFO, str(destination), username="postgres")

    assert ops.calls[1] == ('service_init', str(destination), '-W -U postgres')
    assert 'create_role' not in ops.names()
    assert 'create_database' not in ops.names()
    assert witness_server.revoked == []


def test_witness_refuses_standby_source(provisioner, ops, destination):
    with pytest.raises(ConfigConflict):
        provisioner.create_witness(STANDBY_CONNINFO, str(destination))

    assert ops.calls == []


def test_witness_requires_destination(provisioner):
    with pytest.raises(ConfigConflict):
        provisioner.create_witness(PRIMARY_CONNINFO, "")


def test_unreachable_master_host(provisioner, ops, destination):
    ops.reachable = False

    with pytest.raises(RemoteUnreachable):
        provisioner.create_witness(PRIMARY_CONNINFO, str(destination))

    assert ops.names() == ['remote_reachable']
    assert not destination.exists()


def test_start_failure_leaves_cluster_unregistered(provisioner, ops, catalog, destination):
    ops.statuses['service_start'] = 1

    with pytest.raises(RestartFailed):
        provisioner.create_witness(PRIMARY_CONNINFO, str(destination))

    assert [r.id for r in InMemoryStore(catalog, "demo").get_node_records()] == [1, 2]
    assert destination.exists()


def test_copy_node_records_replaces_existing(provisioner, connector, catalog, witness_server):
    seed_cluster(witness_server.catalog, node_record(7, 'standby', "host=old"))

    with connector.connect(PRIMARY_CONNINFO) as primary, connector.connect(WITNESS_CONNINFO) as witness:
        copied = provisioner.copy_node_records(primary, witness)

    assert copied == 2
    assert [r.id for r in InMemoryStore(witness_server.catalog, "demo").get_node_records()] == [1, 2]


class ForeignKeyStore(InMemoryStore):
    """Rejects rows whose upstream is missing, like the upstream_node_id foreign key."""

    def insert_node_record(self, record):
        nodes = self._schema()['nodes']
        if record.upstream_node_id is not None and record.upstream_node_id not in nodes:
            raise WriteFailed(f"insert violates foreign key constraint: "
                              f"key (upstream_node_id)=({record.upstream_node_id}) is not present")
        super().insert_node_record(record)


def test_copy_cascaded_standbys(make_config, connector, ops, catalog, primary, witness_server):
    seed_cluster(catalog,
                 node_record(1, 'primary', PRIMARY_CONNINFO),
                 node_record(5, 'standby', "host=db5", upstream=1))
    seed_cluster(catalog, node_record(2, 'standby', STANDBY_CONNINFO, upstream=5))
    provisioner = WitnessProvisioner(
        make_config(node_id=9, conninfo=WITNESS_CONNINFO), connector, ops,
        store_factory=lambda node, cluster: ForeignKeyStore(node.server.catalog, cluster)
    )

    with connector.connect(PRIMARY_CONNINFO) as source, connector.connect(WITNESS_CONNINFO) as witness:
        copied = provisioner.copy_node_records(source, witness)

    assert copied == 3
    copied_records = InMemoryStore(witness_server.catalog, "demo").get_node_records()
    assert [(r.id, r.upstream_node_id) for r in copied_records] == [(1, None), (2, 5), (5, 1)]


def test_upstream_order_places_upstreams_first():
    records = [
        node_record(2, 'standby', "host=db2", upstream=5),
        node_record(3, 'standby', "host=db3", upstream=2),
        node_record(5, 'standby', "host=db5", upstream=1),
        node_record(1, 'primary', "host=db1"),
        node_record(9, 'witness', "host=w1", upstream=1),
        node_record(4, 'standby', "host=db4", upstream=42),
    ]

    assert [r.id for r in upstream_order(records)] == [1, 4, 5, 9, 2, 3]


def test_upstream_order_rejects_cycles():
    records = [
        node_record(1, 'primary', "host=db1"),
        node_record(2, 'standby', "host=db2", upstream=3),
        node_record(3, 'standby', "host=db3", upstream=2),
    ]

    with pytest.raises(WriteFailed, match="nodes 2, 3"):
        upstream_order(records)
