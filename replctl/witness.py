"""
Witness creation: a small standalone instance that keeps a copy of the
cluster's node records.
"""

from pathlib import Path
from typing import List, Optional

from .datadir import prepare_data_directory
from .db import Connector, PostgresNode
from .errors import (ConfigConflict, QueryFailed, RemoteCopyFailed, RemoteUnreachable,
                     RestartFailed, WriteFailed)
from .external_ops import ExternalOperations
from .metadata_store import open_store
from .models import NodeRecord, NodeType
from .registration import RegistrationService
from .utils.config import ClusterConfig
from .utils.logger import setup_logger
from .version_gate import VersionGate

DEFAULT_WITNESS_PORT = 5499
DEFAULT_SUPERUSER = "postgres"


class WitnessProvisioner:
    """Creates a witness server and registers it with the master."""

    def __init__(
        self,
        config: ClusterConfig,
        connector: Connector,
        external_ops: ExternalOperations,
        registration: Optional[RegistrationService] = None,
        version_gate: Optional[VersionGate] = None,
        store_factory=None,
        logger=None
    ):
        self.config = config
        self.connector = connector
        self.external_ops = external_ops
        self.logger = logger or setup_logger(__name__)
        self.store_factory = store_factory or open_store
        self.version_gate = version_gate or VersionGate(config, logger=self.logger)
        self.registration = registration or RegistrationService(
            config, connector, version_gate=self.version_gate,
            store_factory=self.store_factory, logger=self.logger
        )

    def create_witness(
        self,
        primary_conninfo: str,
        destination: str,
        port: int = DEFAULT_WITNESS_PORT,
        superuser: str = DEFAULT_SUPERUSER,
        username: Optional[str] = None,
        dbname: Optional[str] = None,
        no_password_prompt: bool = False,
        force: bool = False
    ) -> NodeRecord:
        """
        Create, start and register a witness server.

        Nothing is rolled back when a step fails: a partly built instance
        is left for the operator.

        Args:
            primary_conninfo: Connection string of the master
            destination: Data directory of the new witness
            port: Port the witness listens on
            superuser: Superuser created by initdb
            username: Login role to create when it is not the superuser
            dbname: Database to create when it is not 'postgres'
            no_password_prompt: Do not ask for the superuser password during initdb
            force: Reuse a non-empty destination

        Returns:
            The witness record
        """
        if not destination:
            raise ConfigConflict("A destination directory (-D) is required for the witness")
        self.config.require_node()

        self.logger.info("Connecting to master database")
        with self.connector.connect(primary_conninfo) as primary:
            self.version_gate.check_version(primary, "master")
            if primary.is_standby():
                raise ConfigConflict("The command should not run on a standby node")
            self.logger.info("Successfully connected to master")

            host = primary.host
            if not host or not self.external_ops.remote_reachable(host):
                raise RemoteUnreachable(f"Aborting, remote host {host} is not reachable")

            prepare_data_directory(destination, force=force, logger=self.logger)
            self._bootstrap_instance(destination, port, superuser, no_password_prompt)

            extra_role = username if username and username != DEFAULT_SUPERUSER else None
            if extra_role:
                self.logger.info(f"Creating user {extra_role} for witness database")
                if self.external_ops.create_role(extra_role, port, superuser, superuser=True) != 0:
                    raise ConfigConflict("Can't create user for witness server")

            if dbname and dbname != DEFAULT_SUPERUSER:
                owner = extra_role or superuser
                self.logger.info(f"Creating database {dbname} for witness")
                if self.external_ops.create_database(dbname, owner, port, superuser) != 0:
                    raise ConfigConflict("Can't create database for witness server")

            hba_file = primary.get_setting('hba_file')
            if not hba_file:
                raise QueryFailed("Can't get info about pg_hba.conf")
            if self.external_ops.sync_files(host, hba_file, destination) != 0:
                raise RemoteCopyFailed("Can't rsync the pg_hba.conf file from master")

            if self.external_ops.service_reload(destination) != 0:
                raise RestartFailed("Can't reload cluster for witness server")

            record = self.registration.register_witness(
                primary,
                node_id=self.config.node_id,
                upstream_node_id=None,
                cluster_name=self.config.cluster_name,
                name=self.config.node_name,
                conninfo=self.config.conninfo,
                priority=self.config.priority,
                force=force,
            )

            self.logger.info("Starting copy of configuration from master")
            with self.connector.connect(self.config.conninfo) as witness:
                copied = self.copy_node_records(primary, witness)
                if extra_role:
                    self.logger.info(f"Dropping superuser powers of {extra_role} on witness")
                    witness.revoke_superuser(extra_role)

        self.logger.info(f"Configuration has been successfully copied to the witness ({copied} nodes)")
        return record

    def _bootstrap_instance(self, destination: str, port: int, superuser: str, no_password_prompt: bool) -> None:
        init_options = f"-U {superuser}" if no_password_prompt else f"-W -U {superuser}"
        self.logger.info(f"Initializing cluster for witness in {destination}")
        if self.external_ops.service_init(destination, init_options) != 0:
            raise RestartFailed("Can't initialize cluster for witness server")

        conf_file = Path(destination) / "postgresql.conf"
        try:
            with open(conf_file, 'a') as f:
                f.write("\n# Configuration added by replctl\n")
                f.write(f"port = {port}\n")
                f.write("listen_addresses = '*'\n")
        except OSError as e:
            raise ConfigConflict(f"Could not open {conf_file} for adding extra config: {e}") from e

        self.logger.info("Starting cluster for witness")
        if self.external_ops.service_start(destination) != 0:
            raise RestartFailed("Can't start cluster for witness server")

    def copy_node_records(self, primary: PostgresNode, witness: PostgresNode) -> int:
        """
        Replace the witness's node records with the master's.

        Returns:
            Number of records copied
        """
        source = self.store_factory(primary, self.config.cluster_name)
        target = self.store_factory(witness, self.config.cluster_name)

        if not target.schema_exists():
            target.create_schema()

        records: List[NodeRecord] = source.get_node_records()
        target.truncate_node_records()
        for record in upstream_order(records):
            target.insert_node_record(record)
        return len(records)


def upstream_order(records: List[NodeRecord]) -> List[NodeRecord]:
    """
    Order records so that each one follows its upstream.

    Records whose upstream is not in the list are placed as soon as they are
    reached. Primaries come first, then id order within each level.

    Raises:
        WriteFailed: If the upstream references form a cycle
    """
    known = {record.id for record in records}
    pending = sorted(records, key=lambda r: (r.type != NodeType.PRIMARY, r.id))
    placed = set()
    ordered: List[NodeRecord] = []

    while pending:
        ready = [r for r in pending
                 if r.upstream_node_id is None
                 or r.upstream_node_id not in known
                 or r.upstream_node_id in placed]
        if not ready:
            cycle = ', '.join(str(r.id) for r in pending)
            raise WriteFailed(f"Upstream references of nodes {cycle} form a cycle")
        ordered.extend(ready)
        placed.update(r.id for r in ready)
        pending = [r for r in pending if r.id not in placed]
    return ordered
