import pytest
import yaml

from replctl import __version__
from replctl.cli import ReplCLI

from .conftest import PRIMARY_CONNINFO, STANDBY_CONNINFO
from .fakes import (FakeConnector, FakeExternalOps, FakeServer, memory_store_factory, node_record,
                    seed_cluster)


@pytest.fixture(autouse=True)
def in_tmp_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def write_config(tmp_path):
    def _write(node_id=1, conninfo=PRIMARY_CONNINFO, **values):
        data = {
            'cluster': 'demo',
            'node': node_id,
            'node_name': f"node{node_id}",
            'conninfo': conninfo,
        }
        data.update(values)
        path = tmp_path / f"node{node_id}.yaml"
        path.write_text(yaml.safe_dump(data))
        return str(path)
    return _write


@pytest.fixture
def cli_for(connector, ops, clock):
    def _make(conn=None):
        return ReplCLI(connector=conn or connector, external_ops=ops,
                       store_factory=memory_store_factory, clock=clock, sleep=clock.sleep)
    return _make


@pytest.fixture
def registered(catalog):
    seed_cluster(catalog,
                 node_record(1, 'primary', PRIMARY_CONNINFO),
                 node_record(2, 'standby', STANDBY_CONNINFO, upstream=1))


def test_version(cli_for, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli_for().run(['--version'])

    assert excinfo.value.code == 0
    assert capsys.readouterr().out.strip() == f"replctl {__version__}"


@pytest.mark.parametrize("argv", [
    [],
    ['standby'],
    ['standby', 'dance'],
    ['master', 'register', 'now'],
    ['-h', 'db1', 'master', 'register'],
    ['-D', '/tmp/x', 'standby', 'follow'],
    ['standby', 'clone'],
    ['-h', 'db1', 'standby', 'clone', 'db2'],
    ['-h', 'db1', 'witness', 'create'],
    ['-r', '5 minutes', 'standby', 'follow'],
    ['-f', 'missing.yaml', 'cluster', 'show'],
])
def test_bad_invocations_exit_with_bad_config(cli_for, argv):
    assert cli_for().run(argv) == 1


def test_node_settings_are_required(cli_for, tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("cluster: demo\n")

    assert cli_for().run(['-f', str(path), 'cluster', 'show']) == 1


def test_master_register(cli_for, write_config, catalog):
    assert cli_for().run(['-f', write_config(), 'master', 'register']) == 0

    assert catalog.schema("replctl_demo")['nodes'][1].name == "node1"


def test_primary_is_an_alias_for_master(cli_for, write_config, catalog):
    assert cli_for().run(['-f', write_config(), 'primary', 'register']) == 0


def test_unreachable_node_exits_with_connection_error(cli_for, write_config, primary):
    primary.reachable = False

    assert cli_for().run(['-f', write_config(), 'master', 'register']) == 6


def test_standby_register(cli_for, write_config, catalog, registered):
    config = write_config(node_id=3, conninfo=STANDBY_CONNINFO)

    assert cli_for().run(['-f', config, '--force', 'standby', 'register']) == 0
    assert catalog.schema("replctl_demo")['nodes'][3].upstream_node_id == 1


def test_cluster_show(cli_for, write_config, registered, capsys):
    assert cli_for().run(['-f', write_config(), 'cluster', 'show']) == 0

    assert capsys.readouterr().out.splitlines() == [
        "Role      | Connection String",
        f"* master  | {PRIMARY_CONNINFO}",
        f"  standby | {STANDBY_CONNINFO}",
    ]


def test_promotion_timeout_exits_with_promotion_error(cli_for, write_config, registered, primary, clock, ops):
    primary.reachable = False
    config = write_config(node_id=2, conninfo=STANDBY_CONNINFO,
                          promote_check_timeout=10, promote_check_interval=2)

    assert cli_for().run(['-f', config, 'standby', 'promote']) == 8
    assert ops.names() == ['service_promote']
    assert clock.sleeps == [2] * 5


def test_promotion(cli_for, write_config, registered, primary, standby, ops):
    primary.reachable = False
    ops.on_promote = lambda dd: setattr(standby, 'standby', False)
    config = write_config(node_id=2, conninfo=STANDBY_CONNINFO)

    assert cli_for().run(['-f', config, 'standby', 'promote']) == 0


def test_cluster_cleanup(cli_for, write_config, registered, catalog):
    assert cli_for().run(['-f', write_config(), '-k', '7', 'cluster', 'cleanup']) == 0
    assert catalog.vacuum_count == 1


@pytest.mark.parametrize("settings, expected", [
    ({}, 0),
    ({'wal_level': 'minimal', 'max_wal_senders': '0'}, 1),
])
def test_check_upstream_config(cli_for, settings, expected, capsys):
    server = FakeServer("host=db9", host="db9")
    server.settings.update(settings)

    assert cli_for(FakeConnector(server)).run(['--check-upstream-config', '-h', 'db9']) == expected

    out = capsys.readouterr().out
    if expected:
        assert "wal_level" in out
        assert "max_wal_senders" in out
    else:
        assert "compatible" in out


def test_standby_clone_positional_host(write_config, tmp_path, clock):
    server = FakeServer("host=db9 user=repl", host="db9", data_directory=str(tmp_path / "db9"))
    ops = FakeExternalOps()
    cli = ReplCLI(connector=FakeConnector(server), external_ops=ops, clock=clock, sleep=clock.sleep)
    destination = tmp_path / "clone"

    status = cli.run(['-f', write_config(node_id=5), '-U', 'repl', '-D', str(destination),
                      'standby', 'clone', 'db9'])

    assert status == 0
    assert ops.names() == ['run_backup']
    assert (destination / "standby.signal").exists()


def test_clone_backup_failure_exit_code(write_config, tmp_path, clock):
    server = FakeServer("host=db9", host="db9", data_directory=str(tmp_path / "db9"))
    ops = FakeExternalOps()
    ops.statuses['run_backup'] = 1
    cli = ReplCLI(connector=FakeConnector(server), external_ops=ops, clock=clock, sleep=clock.sleep)

    assert cli.run(['-f', write_config(), '-D', str(tmp_path / "clone"), 'standby', 'clone', 'db9']) == 14
