"""
Standby clone: builds a new standby's data directory from an upstream server.

The pipeline stops at the first failing stage. Whatever was already written
to the destination stays there; the error carries the CloneResult so the
operator can see how far the clone got.
"""

import os
from typing import Dict, Optional, Sequence

from .config_check import ConfigChecker
from .datadir import prepare_data_directory
from .db import Connector, PostgresNode
from .errors import (BackupFailed, ConfigConflict, QueryFailed, RemoteCopyFailed,
                     RemoteUnreachable, ReplError)
from .external_ops import ExternalOperations
from .models import CloneResult
from .recovery_conf import build_primary_conninfo, write_recovery_config
from .utils.config import ClusterConfig, TablespaceMapping
from .utils.logger import setup_logger
from .version_gate import REPLICATION_SLOTS_MIN_VERSION, VersionGate

STAGE_CONNECT = "connect"
STAGE_TABLESPACES = "tablespaces"
STAGE_CONFIG_FILES = "config_files"
STAGE_DESTINATION = "destination"
STAGE_BACKUP = "backup"
STAGE_COPY_FILES = "copy_config_files"
STAGE_RECOVERY = "recovery_config"
STAGE_SLOT = "replication_slot"

CONFIG_FILE_SETTINGS = ('config_file', 'hba_file', 'ident_file')


class CloneOrchestrator:
    """Runs the standby clone pipeline."""

    def __init__(
        self,
        config: ClusterConfig,
        connector: Connector,
        external_ops: ExternalOperations,
        version_gate: Optional[VersionGate] = None,
        config_checker: Optional[ConfigChecker] = None,
        logger=None
    ):
        self.config = config
        self.connector = connector
        self.external_ops = external_ops
        self.logger = logger or setup_logger(__name__)
        self.version_gate = version_gate or VersionGate(config, logger=self.logger)
        self.config_checker = config_checker or ConfigChecker(config, logger=self.logger)

    def clone_standby(
        self,
        primary_conninfo: str,
        destination: Optional[str] = None,
        tablespace_remaps: Optional[Sequence[TablespaceMapping]] = None,
        use_slots: Optional[bool] = None,
        force: bool = False,
        apply_delay: Optional[str] = None
    ) -> CloneResult:
        """
        Clone a standby from an upstream server.

        Args:
            primary_conninfo: Connection string of the upstream
            destination: Target directory; every file lands here when given,
                otherwise the upstream's own paths are reused
            tablespace_remaps: Tablespace relocations, defaults to the configured ones
            use_slots: Create a replication slot, defaults to the configured flag
            force: Overwrite a non-empty destination
            apply_delay: Optional recovery_min_apply_delay for the new standby

        Returns:
            The completed CloneResult

        Raises:
            ReplError: Any stage failure; the exception's clone_result attribute
                holds the partial result
        """
        if tablespace_remaps is None:
            tablespace_remaps = self.config.tablespace_mapping
        if use_slots is None:
            use_slots = self.config.use_replication_slots
        slot_name = f"replctl_slot_{self.config.node_id}" if use_slots else None
        if use_slots and self.config.node_id is None:
            raise ConfigConflict("A node id is required to name the replication slot")

        if destination:
            self.logger.info(f"Destination directory {destination} provided, cloning everything into it")

        result = CloneResult()
        self.logger.info("Connecting to master database")
        with self.connector.connect(primary_conninfo) as upstream:
            try:
                self._run(upstream, result, destination, tablespace_remaps, slot_name, force, apply_delay)
            except ReplError as e:
                e.clone_result = result
                if STAGE_DESTINATION in result.stages_completed:
                    if STAGE_BACKUP in result.stages_completed:
                        self.logger.error("Base backup completed but the standby could not be finished")
                    else:
                        self.logger.error("Unable to take a base backup of the master server")
                    self.logger.warning(
                        f"The destination directory ({result.data_directory}) will need "
                        "to be cleaned up manually"
                    )
                raise

        self.logger.info("Base backup of standby complete")
        self.logger.info(f"HINT: you can now start your PostgreSQL server, for example: "
                         f"pg_ctl -D {result.data_directory} start")
        return result

    def _run(
        self,
        upstream: PostgresNode,
        result: CloneResult,
        destination: Optional[str],
        tablespace_remaps: Sequence[TablespaceMapping],
        slot_name: Optional[str],
        force: bool,
        apply_delay: Optional[str]
    ) -> None:
        version = self.version_gate.check_version(upstream, "master")
        self.config_checker.check_upstream_config(upstream, version, exit_on_error=True)
        result.complete(STAGE_CONNECT)

        self._check_tablespaces(upstream, version.num, tablespace_remaps)
        result.complete(STAGE_TABLESPACES)

        self.logger.info(f"Connected to master, current installation size is {upstream.cluster_size()}")
        upstream_data_directory, remote_files = self._config_file_locations(upstream)
        result.complete(STAGE_CONFIG_FILES)

        data_directory = destination or upstream_data_directory
        result.data_directory = data_directory
        prepare_data_directory(data_directory, force=force, logger=self.logger)
        result.complete(STAGE_DESTINATION)

        self.logger.info("Starting backup")
        status = self.external_ops.run_backup(
            upstream.host, upstream.port, upstream.user, data_directory, tablespace_remaps
        )
        if status != 0:
            raise BackupFailed(f"Base backup failed with exit status {status}")
        result.complete(STAGE_BACKUP)

        if remote_files:
            self._copy_config_files(upstream.host, remote_files, destination, force, result)
        result.complete(STAGE_COPY_FILES)

        primary_conninfo = build_primary_conninfo(
            upstream.host, upstream.port, upstream.user, self.config.node_name
        )
        write_recovery_config(data_directory, version, primary_conninfo,
                              apply_delay=apply_delay, slot_name=slot_name, logger=self.logger)
        result.complete(STAGE_RECOVERY)

        if slot_name:
            try:
                upstream.create_replication_slot(slot_name)
            except QueryFailed as e:
                raise QueryFailed(
                    f"Base backup completed but replication slot '{slot_name}' "
                    f"could not be created: {e}"
                ) from e
            result.slot_name = slot_name
            result.complete(STAGE_SLOT)

    def _check_tablespaces(
        self,
        upstream: PostgresNode,
        version_num: int,
        tablespace_remaps: Sequence[TablespaceMapping]
    ) -> None:
        if not tablespace_remaps:
            return
        if version_num < REPLICATION_SLOTS_MIN_VERSION:
            raise ConfigConflict("Configuration option 'tablespace_mapping' requires PostgreSQL 9.4 or later")
        for mapping in tablespace_remaps:
            if not upstream.tablespace_exists(mapping.old_dir):
                raise ConfigConflict(f"No tablespace matching path '{mapping.old_dir}' found")

    def _config_file_locations(self, upstream: PostgresNode):
        """
        Returns:
            (upstream data directory, {setting: path} for files outside it)
        """
        try:
            rows = upstream.get_config_file_locations()
        except QueryFailed as e:
            raise ConfigConflict(f"Can't get info about data directory and configuration files: {e}") from e
        if len(rows) != 4:
            raise ConfigConflict("STANDBY CLONE should be run by a SUPERUSER")

        data_directory = ""
        remote_files: Dict[str, str] = {}
        for name, setting, in_data_dir in rows:
            if name == 'data_directory':
                data_directory = setting
            elif name in CONFIG_FILE_SETTINGS:
                if not in_data_dir:
                    remote_files[name] = setting
            else:
                self.logger.warning(f"Unknown parameter: {name}")
        return data_directory, remote_files

    def _copy_config_files(
        self,
        host: Optional[str],
        remote_files: Dict[str, str],
        destination: Optional[str],
        force: bool,
        result: CloneResult
    ) -> None:
        self.logger.info("Copying configuration files from master")
        if not host or not self.external_ops.remote_reachable(host):
            raise RemoteUnreachable(f"Aborting, remote host {host} is not reachable")

        for name in CONFIG_FILE_SETTINGS:
            remote_path = remote_files.get(name)
            if not remote_path:
                continue
            local_path = destination or remote_path
            self.logger.info(f"Master {name} '{remote_path}'")
            status = self.external_ops.sync_files(host, remote_path, local_path, delete=force)
            if status != 0:
                raise RemoteCopyFailed(f"Failed copying master {name} '{remote_path}'")
            if destination:
                result.copied_files.append(os.path.join(destination, os.path.basename(remote_path)))
            else:
                result.copied_files.append(remote_path)
