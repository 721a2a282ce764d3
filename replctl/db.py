"""
PostgreSQL client layer.
Opens connections and answers the questions replctl asks every node:
role, version, settings, tablespaces and replication slots.
"""

from typing import Any, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import Error as Psycopg2Error
from psycopg2 import sql
from psycopg2.extensions import make_dsn, parse_dsn

from .errors import ConnectionFailed, QueryFailed
from .models import VersionInfo
from .utils.logger import setup_logger

APPLICATION_NAME = "replctl"

# Rows: (name, setting, lives inside data_directory)
CONFIG_FILES_QUERY = """
    WITH dd AS (
        SELECT setting
          FROM pg_catalog.pg_settings
         WHERE name = 'data_directory'
    )
    SELECT ps.name, ps.setting,
           ps.setting ~ ('^' || dd.setting) AS in_data_dir
      FROM dd, pg_catalog.pg_settings ps
     WHERE ps.name IN ('data_directory', 'config_file', 'hba_file', 'ident_file')
  ORDER BY 1
"""


def conninfo_params(conninfo: str) -> dict:
    """Split a libpq connection string into its keywords."""
    try:
        return parse_dsn(conninfo)
    except Psycopg2Error as e:
        raise ConnectionFailed(f"Invalid connection string '{conninfo}': {e}") from e


def build_conninfo(**params: Any) -> str:
    """Build a libpq connection string, dropping empty values."""
    return make_dsn(**{k: v for k, v in params.items() if v not in (None, "")})


class PostgresNode:
    """An open connection to one PostgreSQL server."""

    def __init__(self, conn, conninfo: str, logger=None):
        self._conn = conn
        self.conninfo = conninfo
        self.logger = logger or setup_logger(__name__)

    @property
    def host(self) -> Optional[str]:
        return self._conn.info.host

    @property
    def port(self) -> Optional[int]:
        return self._conn.info.port

    @property
    def user(self) -> Optional[str]:
        return self._conn.info.user

    @property
    def closed(self) -> bool:
        return bool(self._conn.closed)

    def execute(self, query, params: Optional[Sequence] = None) -> int:
        """
        Execute a statement that returns no rows.

        Returns:
            Number of affected rows
        """
        self._log_query(query, params)
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount
        except Psycopg2Error as e:
            raise QueryFailed(f"{self._describe(query)} | ERROR: {e}") from e

    def fetch(self, query, params: Optional[Sequence] = None) -> List[Tuple]:
        """Execute a query and return all rows."""
        self._log_query(query, params)
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                results = cur.fetchall()
        except Psycopg2Error as e:
            raise QueryFailed(f"{self._describe(query)} | ERROR: {e}") from e
        self.logger.debug(f"RESULT: {len(results)} row(s)")
        return results

    def fetch_value(self, query, params: Optional[Sequence] = None) -> Any:
        rows = self.fetch(query, params)
        if not rows:
            return None
        return rows[0][0]

    def is_standby(self) -> bool:
        """True while the server is in recovery."""
        return bool(self.fetch_value("SELECT pg_catalog.pg_is_in_recovery()"))

    def is_alive(self) -> bool:
        if self.closed:
            return False
        try:
            self.fetch_value("SELECT 1")
            return True
        except QueryFailed:
            return False

    def server_version(self) -> VersionInfo:
        num = self.fetch_value("SELECT pg_catalog.current_setting('server_version_num')")
        text = self.fetch_value("SELECT pg_catalog.current_setting('server_version')")
        return VersionInfo(num=int(num), text=text)

    def get_setting(self, name: str) -> Optional[str]:
        return self.fetch_value(
            "SELECT setting FROM pg_catalog.pg_settings WHERE name = %s",
            (name,)
        )

    def get_config_file_locations(self) -> List[Tuple[str, str, bool]]:
        return [(name, setting, bool(in_dd)) for name, setting, in_dd in self.fetch(CONFIG_FILES_QUERY)]

    def tablespace_exists(self, location: str) -> bool:
        rows = self.fetch(
            "SELECT spcname FROM pg_catalog.pg_tablespace "
            "WHERE pg_catalog.pg_tablespace_location(oid) = %s",
            (location,)
        )
        return len(rows) > 0

    def cluster_size(self) -> str:
        return self.fetch_value(
            "SELECT pg_catalog.pg_size_pretty(SUM(pg_catalog.pg_database_size(oid))::BIGINT) "
            "FROM pg_catalog.pg_database"
        )

    def create_replication_slot(self, slot_name: str) -> None:
        """
        Create a physical replication slot.

        An existing inactive slot with the same name is reused; an active one
        means another standby is consuming it.
        """
        rows = self.fetch(
            "SELECT slot_type, active FROM pg_catalog.pg_replication_slots WHERE slot_name = %s",
            (slot_name,)
        )
        if rows:
            slot_type, active = rows[0]
            if slot_type != 'physical':
                raise QueryFailed(f"Slot '{slot_name}' exists and is not a physical slot")
            if active:
                raise QueryFailed(f"Slot '{slot_name}' already exists as an active slot")
            self.logger.info(f"Replication slot '{slot_name}' exists but is inactive; reusing")
            return

        self.fetch("SELECT * FROM pg_catalog.pg_create_physical_replication_slot(%s)", (slot_name,))
        self.logger.info(f"Replication slot '{slot_name}' created")

    def revoke_superuser(self, role: str) -> None:
        self.execute(sql.SQL("ALTER ROLE {} NOSUPERUSER").format(sql.Identifier(role)))

    def close(self) -> None:
        if not self._conn.closed:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _log_query(self, query, params) -> None:
        if params:
            self.logger.debug(f"QUERY: {self._describe(query)} | params: {params}")
        else:
            self.logger.debug(f"QUERY: {self._describe(query)}")

    def _describe(self, query) -> str:
        if not isinstance(query, str):
            try:
                query = query.as_string(self._conn)
            except Psycopg2Error:
                query = repr(query)
        return ' '.join(query.strip().split())


class Connector:
    """Opens PostgresNode handles."""

    def __init__(self, application_name: str = APPLICATION_NAME, logger=None):
        self.application_name = application_name
        self.logger = logger or setup_logger(__name__)

    def connect(self, conninfo: str, timeout: Optional[int] = None) -> PostgresNode:
        """
        Connect to a server.

        Args:
            conninfo: libpq connection string
            timeout: connect_timeout in seconds

        Raises:
            ConnectionFailed: if the server cannot be reached
        """
        kwargs = {'application_name': self.application_name}
        if timeout:
            kwargs['connect_timeout'] = timeout
        try:
            conn = psycopg2.connect(conninfo, **kwargs)
        except Psycopg2Error as e:
            raise ConnectionFailed(f"Connection to database failed ({conninfo}): {e}") from e
        conn.autocommit = True
        return PostgresNode(conn, conninfo, logger=self.logger)
