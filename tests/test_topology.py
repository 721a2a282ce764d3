import pytest

from replctl.topology import TopologyResolver

from .conftest import PRIMARY_CONNINFO, STANDBY_CONNINFO
from .fakes import FakeConnector, FakeServer, memory_store_factory, node_record, seed_cluster


def build_cluster(catalog, roles):
    """roles: list of (node_id, type, is_standby, reachable)."""
    connector = FakeConnector()
    records = []
    for node_id, type_, is_standby, reachable in roles:
        conninfo = f"host=db{node_id} dbname=replctl"
        connector.add(FakeServer(conninfo, standby=is_standby, reachable=reachable,
                                 host=f"db{node_id}", catalog=catalog))
        records.append(node_record(node_id, type_, conninfo))
    seed_cluster(catalog, *records)
    return connector


@pytest.fixture
def resolver_for(make_config):
    def _make(connector):
        return TopologyResolver(make_config(), connector, memory_store_factory)
    return _make


def seed_node(connector):
    for server in connector.servers.values():
        if server.reachable:
            return connector.connect(server.conninfo)
    raise AssertionError("no reachable seed")


@pytest.mark.parametrize("primary_id", [1, 2, 3])
def test_single_live_primary_found_regardless_of_position(catalog, resolver_for, primary_id):
    roles = [(i, 'standby', i != primary_id, True) for i in (1, 2, 3)]
    connector = build_cluster(catalog, roles)
    resolver = resolver_for(connector)

    record, node = resolver.resolve_primary_record(seed_node(connector))

    assert record.id == primary_id
    assert node.conninfo == f"host=db{primary_id} dbname=replctl"


def test_no_live_primary_returns_none(catalog, resolver_for):
    connector = build_cluster(catalog, [
        (1, 'primary', False, False),
        (2, 'standby', True, True),
        (3, 'standby', True, True),
    ])
    resolver = resolver_for(connector)

    assert resolver.resolve_primary(seed_node(connector)) is None


def test_unreachable_nodes_are_skipped(catalog, resolver_for):
    connector = build_cluster(catalog, [
        (1, 'primary', False, False),
        (2, 'standby', True, True),
        (3, 'standby', False, True),
    ])
    resolver = resolver_for(connector)

    record, _ = resolver.resolve_primary_record(seed_node(connector))

    assert record.id == 3
    assert "host=db1 dbname=replctl" in connector.attempts


def test_witness_is_never_a_primary(catalog, resolver_for):
    connector = build_cluster(catalog, [
        (1, 'witness', False, True),
        (2, 'primary', False, True),
    ])
    resolver = resolver_for(connector)

    record, _ = resolver.resolve_primary_record(seed_node(connector))

    assert record.id == 2
    assert "host=db1 dbname=replctl" not in connector.attempts[1:]


def test_split_brain_returns_lowest_id(catalog, resolver_for):
    connector = build_cluster(catalog, [
        (1, 'standby', True, True),
        (2, 'primary', False, True),
        (3, 'primary', False, True),
    ])
    resolver = resolver_for(connector)

    record, _ = resolver.resolve_primary_record(seed_node(connector))

    assert record.id == 2


def test_excluded_node_is_not_probed(catalog, resolver_for):
    connector = build_cluster(catalog, [
        (1, 'primary', False, True),
        (2, 'standby', True, True),
    ])
    resolver = resolver_for(connector)
    seed = connector.connect("host=db2 dbname=replctl")

    assert resolver.resolve_primary(seed, exclude_node_id=1) is None


def test_probe_connections_are_closed(catalog, resolver_for):
    connector = build_cluster(catalog, [
        (1, 'standby', True, True),
        (2, 'standby', True, True),
        (3, 'primary', False, True),
    ])
    resolver = resolver_for(connector)
    seed = seed_node(connector)

    primary = resolver.resolve_primary(seed)

    assert set(connector.open_handles()) == {seed, primary}
    primary.close()
    seed.close()
    assert connector.open_handles() == []


def test_probe_role(catalog, resolver_for, primary, standby):
    connector = FakeConnector(primary, standby)
    resolver = resolver_for(connector)

    assert resolver.probe_role(PRIMARY_CONNINFO) == "master"
    assert resolver.probe_role(STANDBY_CONNINFO) == "standby"
    assert resolver.probe_role("host=nowhere") is None
    assert connector.open_handles() == []


def test_describe_cluster_reports_roles(catalog, resolver_for):
    connector = build_cluster(catalog, [
        (1, 'primary', False, True),
        (2, 'standby', True, True),
        (3, 'standby', True, False),
        (4, 'witness', False, True),
    ])
    resolver = resolver_for(connector)

    statuses = resolver.describe_cluster(seed_node(connector))

    assert [(s.record.id, s.role) for s in statuses] == [
        (1, "master"), (2, "standby"), (3, "FAILED"), (4, "witness"),
    ]
    assert statuses[0].label == "* master"
    assert statuses[1].label == "  standby"
