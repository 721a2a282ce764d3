import pytest

from replctl.utils.config import ClusterConfig

from .fakes import Catalog, FakeClock, FakeConnector, FakeExternalOps, FakeServer

PRIMARY_CONNINFO = "host=db1 dbname=replctl user=repl"
STANDBY_CONNINFO = "host=db2 dbname=replctl user=repl"
STANDBY3_CONNINFO = "host=db3 dbname=replctl user=repl"


@pytest.fixture(autouse=True)
def no_pgpassword(monkeypatch):
    monkeypatch.delenv("PGPASSWORD", raising=False)


@pytest.fixture
def make_config():
    def _make(node_id=1, conninfo=PRIMARY_CONNINFO, **overrides):
        values = dict(
            cluster_name="demo",
            node_id=node_id,
            node_name=f"node{node_id}",
            conninfo=conninfo,
            reconnect_interval=0,
        )
        values.update(overrides)
        return ClusterConfig(**values)
    return _make


@pytest.fixture
def catalog():
    return Catalog()


@pytest.fixture
def primary(catalog, tmp_path):
    return FakeServer(PRIMARY_CONNINFO, host="db1", catalog=catalog,
                      data_directory=str(tmp_path / "db1"))


@pytest.fixture
def standby(catalog, tmp_path):
    return FakeServer(STANDBY_CONNINFO, standby=True, host="db2", catalog=catalog,
                      data_directory=str(tmp_path / "db2"))


@pytest.fixture
def connector(primary, standby):
    return FakeConnector(primary, standby)


@pytest.fixture
def ops():
    return FakeExternalOps()


@pytest.fixture
def clock():
    return FakeClock()
