#!/usr/bin/env python3
"""
replctl command line interface.
Replication manager for primary/standby PostgreSQL clusters.
"""

import argparse
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional, Tuple

from . import __version__
from .clone import CloneOrchestrator
from .config_check import ConfigChecker
from .db import Connector, build_conninfo
from .errors import ERR_BAD_CONFIG, SUCCESS, ConfigConflict, PromotionTimedOut, ReplError
from .external_ops import ExternalOperations, LocalExternalOperations
from .follow import FollowProtocol
from .models import NodeType, PromotionState
from .promote import PromotionStateMachine
from .recovery_conf import validate_apply_delay
from .registration import RegistrationService
from .retention import RetentionService
from .topology import TopologyResolver
from .utils.config import DEFAULT_CONFIG_FILE, ClusterConfig, Config
from .utils.logger import setup_logger
from .version_gate import VersionGate
from .witness import DEFAULT_SUPERUSER, DEFAULT_WITNESS_PORT, WitnessProvisioner

MASTER_REGISTER = "master register"
STANDBY_REGISTER = "standby register"
STANDBY_CLONE = "standby clone"
STANDBY_PROMOTE = "standby promote"
STANDBY_FOLLOW = "standby follow"
WITNESS_CREATE = "witness create"
CLUSTER_SHOW = "cluster show"
CLUSTER_CLEANUP = "cluster cleanup"
CHECK_UPSTREAM_CONFIG = "check upstream config"

ACTIONS = {
    'master': ('register',),
    'primary': ('register',),
    'standby': ('register', 'clone', 'promote', 'follow'),
    'witness': ('create',),
    'cluster': ('show', 'cleanup'),
}

# actions that find the master through the metadata and refuse explicit connection parameters
SELF_LOCATING_ACTIONS = (MASTER_REGISTER, STANDBY_REGISTER, STANDBY_PROMOTE, STANDBY_FOLLOW)


class ReplCLI:
    """Main CLI interface for replctl."""

    def __init__(
        self,
        connector: Optional[Connector] = None,
        external_ops: Optional[ExternalOperations] = None,
        store_factory=None,
        clock=time.monotonic,
        sleep=time.sleep
    ):
        """
        Initialize CLI.

        Args:
            connector: Connection factory, a psycopg2 Connector by default
            external_ops: External operations, subprocess/paramiko based by default
            store_factory: Callable (node, cluster_name) -> MetadataStore
            clock: Monotonic clock used by promotion polling
            sleep: Sleep function used by promotion polling
        """
        self.logger = None
        self.config = None
        self.cluster_config: Optional[ClusterConfig] = None
        self.connector = connector
        self.external_ops = external_ops
        self.store_factory = store_factory
        self.clock = clock
        self.sleep = sleep
        self.cancel = threading.Event()

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='replctl',
            description='Replication manager for PostgreSQL primary/standby clusters',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            add_help=False,
            epilog="""
Commands:
  master register          initialise the cluster and register the master node
  standby register         register a standby in the cluster
  standby clone [node]     create a new standby from an existing master or standby
  standby promote          promote a standby to master
  standby follow           make a standby follow the current master
  witness create           create and register a witness server
  cluster show             print the node list with each node's current role
  cluster cleanup          prune the monitoring history

Examples:
  # Register the master
  %(prog)s -f replctl.yaml master register

  # Clone a standby from 192.168.1.10 into /var/lib/pgsql/data
  %(prog)s -h 192.168.1.10 -U repl -d postgres -D /var/lib/pgsql/data standby clone

  # Keep one week of monitoring history
  %(prog)s -f replctl.yaml -k 7 cluster cleanup
            """
        )

        parser.add_argument('action', nargs='*', help='Command to execute (subject and verb)')

        general_group = parser.add_argument_group('General Options')
        general_group.add_argument('--help', action='help', help='Show this help, then exit')
        general_group.add_argument('-V', '--version', action='version', version=f'%(prog)s {__version__}')
        general_group.add_argument('-f', '--config-file', type=Path,
                                   help=f'Configuration file path (YAML or JSON, default: ./{DEFAULT_CONFIG_FILE})')
        general_group.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')
        general_group.add_argument('-L', '--log-level', help='Log level (DEBUG, INFO, WARNING, ERROR)')

        conn_group = parser.add_argument_group('Connection Options')
        conn_group.add_argument('-d', '--dbname', help='Database to connect to')
        conn_group.add_argument('-h', '--host', help='Database server host or socket directory')
        conn_group.add_argument('-p', '--port', type=int, help='Database server port')
        conn_group.add_argument('-U', '--username', help='Database user name to connect as')

        action_group = parser.add_argument_group('Command Options')
        action_group.add_argument('-D', '--data-dir', help='Local directory where the files will be copied to')
        action_group.add_argument('-l', '--local-port', type=int, help='Port of the new witness server')
        action_group.add_argument('-S', '--superuser', help='Superuser to create on the witness server')
        action_group.add_argument('-R', '--remote-user', help='Database server user for rsync and SSH')
        action_group.add_argument('-b', '--pg_bindir', help='Path to PostgreSQL binaries')
        action_group.add_argument('-w', '--wal-keep-segments', type=int,
                                  help='Minimum value for the upstream wal_keep_segments setting')
        action_group.add_argument('-k', '--keep-history', type=int, default=0,
                                  help='Days of monitoring history to keep (default: 0, keep nothing)')
        action_group.add_argument('-F', '--force', action='store_true',
                                  help='Force potentially dangerous operations to happen')
        action_group.add_argument('-W', '--wait', action='store_true',
                                  help='Wait for a master to appear (standby follow)')
        action_group.add_argument('-r', '--min-recovery-apply-delay',
                                  help='Value for recovery_min_apply_delay (e.g. 10s, 5min)')
        action_group.add_argument('--initdb-no-pwprompt', action='store_true',
                                  help='Do not ask for the witness superuser password')
        action_group.add_argument('--check-upstream-config', action='store_true',
                                  help='Check the upstream server is configured for replication')
        return parser

    def parse_args(self, argv: Optional[List[str]] = None) -> argparse.Namespace:
        """Parse command line arguments."""
        return self.build_parser().parse_args(argv)

    def resolve_action(self, args: argparse.Namespace) -> Tuple[str, Optional[str]]:
        """
        Turn the positional words into an action.

        Returns:
            (action, host given after 'standby clone')
        """
        if args.check_upstream_config:
            if args.action:
                raise ConfigConflict("--check-upstream-config does not take a command")
            return CHECK_UPSTREAM_CONFIG, None

        words = [word.lower() for word in args.action]
        if len(words) < 2:
            raise ConfigConflict("No command given; see --help")

        subject, verb, extra = words[0], words[1], args.action[2:]
        if verb not in ACTIONS.get(subject, ()):
            raise ConfigConflict(f"Unknown command: {' '.join(args.action)}")
        if subject == 'primary':
            subject = 'master'
        action = f"{subject} {verb}"

        if action == STANDBY_CLONE and len(extra) == 1:
            if args.host:
                raise ConfigConflict("Conflicting parameters: the clone source is given twice")
            return action, extra[0]
        if extra:
            raise ConfigConflict(f"Too many command-line arguments (first extra is \"{extra[0]}\")")
        return action, None

    def check_parameters(self, action: str, args: argparse.Namespace, host: Optional[str]) -> None:
        """Reject options that make no sense for an action."""
        if action in SELF_LOCATING_ACTIONS:
            if args.host or args.port or args.username or args.dbname:
                raise ConfigConflict(
                    f"You can't use connection parameters to the master when issuing a "
                    f"{action.upper()} command"
                )
            if args.data_dir:
                raise ConfigConflict(f"You don't need a destination directory for {action.upper()} command")

        if action in (STANDBY_CLONE, WITNESS_CREATE, CHECK_UPSTREAM_CONFIG) and not (host or args.host):
            raise ConfigConflict(f"You need to use connection parameters to the master when issuing a "
                                 f"{action.upper()} command")

        if action == WITNESS_CREATE and not args.data_dir:
            raise ConfigConflict("You need a destination directory (-D) for WITNESS CREATE command")

        if args.min_recovery_apply_delay:
            validate_apply_delay(args.min_recovery_apply_delay)

    def load_config(self, args: argparse.Namespace) -> None:
        """Load configuration from file and merge with command line arguments."""
        config_file = args.config_file
        if config_file is None and DEFAULT_CONFIG_FILE.exists():
            config_file = DEFAULT_CONFIG_FILE
        if config_file is not None and not config_file.exists():
            raise ConfigConflict(f"Configuration file {config_file} not found")
        self.config = Config(config_file) if config_file else Config()

        # Override config with command line arguments
        if args.pg_bindir:
            self.config.set('pg_bindir', args.pg_bindir)
        if args.wal_keep_segments is not None:
            self.config.set('wal_keep_segments', args.wal_keep_segments)
        if args.remote_user:
            self.config.set('ssh.user', args.remote_user)
        if args.log_level:
            self.config.set('log_level', args.log_level)

        self.cluster_config = ClusterConfig.from_config(self.config)

    def setup_logging(self, verbose: bool) -> None:
        """Set up logging for the whole package."""
        log_file = self.cluster_config.log_file if self.cluster_config else None
        level = self.cluster_config.log_level if self.cluster_config else None
        self.logger = setup_logger(
            'replctl',
            log_file=Path(log_file) if log_file else None,
            verbose=verbose,
            level=level
        )

    def get_connector(self) -> Connector:
        if not self.connector:
            self.connector = Connector(logger=self.logger)
        return self.connector

    def get_external_ops(self) -> ExternalOperations:
        if not self.external_ops:
            self.external_ops = LocalExternalOperations(self.cluster_config, logger=self.logger)
        return self.external_ops

    def upstream_conninfo(self, args: argparse.Namespace, host: Optional[str]) -> str:
        return build_conninfo(
            host=host or args.host,
            port=args.port,
            user=args.username,
            dbname=args.dbname,
        )

    def master_register(self, args: argparse.Namespace) -> None:
        cfg = self.cluster_config
        service = RegistrationService(cfg, self.get_connector(), store_factory=self.store_factory,
                                      logger=self.logger)
        service.register(NodeType.PRIMARY, cfg.node_id, None, cfg.cluster_name, cfg.node_name,
                         cfg.conninfo, cfg.priority, force=args.force)

    def standby_register(self, args: argparse.Namespace) -> None:
        cfg = self.cluster_config
        service = RegistrationService(cfg, self.get_connector(), store_factory=self.store_factory,
                                      logger=self.logger)
        service.register(NodeType.STANDBY, cfg.node_id, cfg.upstream_node_id, cfg.cluster_name,
                         cfg.node_name, cfg.conninfo, cfg.priority, force=args.force)

    def standby_clone(self, args: argparse.Namespace, host: Optional[str]) -> None:
        orchestrator = CloneOrchestrator(self.cluster_config, self.get_connector(),
                                         self.get_external_ops(), logger=self.logger)
        orchestrator.clone_standby(
            self.upstream_conninfo(args, host),
            destination=args.data_dir,
            force=args.force,
            apply_delay=args.min_recovery_apply_delay,
        )

    def standby_promote(self, args: argparse.Namespace) -> None:
        machine = PromotionStateMachine(self.cluster_config, self.get_connector(), self.get_external_ops(),
                                        store_factory=self.store_factory, clock=self.clock,
                                        sleep=self.sleep, logger=self.logger)
        result = machine.promote()
        if result.state == PromotionState.PROMOTION_TIMED_OUT:
            raise PromotionTimedOut(
                f"Promotion not confirmed after {self.cluster_config.promote_check_timeout} seconds"
            )

    def standby_follow(self, args: argparse.Namespace) -> None:
        protocol = FollowProtocol(self.cluster_config, self.get_connector(), self.get_external_ops(),
                                  store_factory=self.store_factory, logger=self.logger)
        protocol.follow(wait_for_primary=args.wait, cancel=self.cancel,
                        apply_delay=args.min_recovery_apply_delay)

    def witness_create(self, args: argparse.Namespace) -> None:
        provisioner = WitnessProvisioner(self.cluster_config, self.get_connector(),
                                         self.get_external_ops(), store_factory=self.store_factory,
                                         logger=self.logger)
        provisioner.create_witness(
            build_conninfo(host=args.host, port=args.port),
            destination=args.data_dir,
            port=args.local_port or DEFAULT_WITNESS_PORT,
            superuser=args.superuser or DEFAULT_SUPERUSER,
            username=args.username,
            dbname=args.dbname,
            no_password_prompt=args.initdb_no_pwprompt,
            force=args.force,
        )

    def cluster_show(self, args: argparse.Namespace) -> None:
        """Print every node with its current role."""
        resolver = TopologyResolver(self.cluster_config, self.get_connector(), self.store_factory,
                                    logger=self.logger)
        with self.get_connector().connect(self.cluster_config.conninfo) as local:
            statuses = resolver.describe_cluster(local)

        print("Role      | Connection String")
        for status in statuses:
            print(f"{status.label:<10}| {status.record.conninfo}")

    def cluster_cleanup(self, args: argparse.Namespace) -> None:
        service = RetentionService(self.cluster_config, self.get_connector(),
                                   store_factory=self.store_factory, logger=self.logger)
        service.cleanup(args.keep_history)

    def check_upstream_config(self, args: argparse.Namespace) -> int:
        cfg = self.cluster_config
        with self.get_connector().connect(self.upstream_conninfo(args, None)) as upstream:
            version = VersionGate(cfg, logger=self.logger).check_version(upstream, "master")
            config_ok, violations = ConfigChecker(cfg, logger=self.logger).check_upstream_config(
                upstream, version, exit_on_error=False
            )

        if config_ok:
            print("Upstream configuration is compatible with replctl")
            return SUCCESS
        print("Upstream configuration is not compatible with replctl:")
        for violation in violations:
            print(f"  {violation}")
        return ERR_BAD_CONFIG

    def dispatch(self, action: str, args: argparse.Namespace, host: Optional[str]) -> int:
        if action not in (STANDBY_CLONE, CHECK_UPSTREAM_CONFIG):
            self.cluster_config.require_node()

        if action == MASTER_REGISTER:
            self.master_register(args)
        elif action == STANDBY_REGISTER:
            self.standby_register(args)
        elif action == STANDBY_CLONE:
            self.standby_clone(args, host)
        elif action == STANDBY_PROMOTE:
            self.standby_promote(args)
        elif action == STANDBY_FOLLOW:
            self.standby_follow(args)
        elif action == WITNESS_CREATE:
            self.witness_create(args)
        elif action == CLUSTER_SHOW:
            self.cluster_show(args)
        elif action == CLUSTER_CLEANUP:
            self.cluster_cleanup(args)
        elif action == CHECK_UPSTREAM_CONFIG:
            return self.check_upstream_config(args)
        return SUCCESS

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Main entry point."""
        args = self.parse_args(argv)

        try:
            action, host = self.resolve_action(args)
            self.check_parameters(action, args, host)
            self.load_config(args)
            self.setup_logging(args.verbose)
            return self.dispatch(action, args, host)
        except KeyboardInterrupt:
            self.cancel.set()
            if self.logger:
                self.logger.info("Interrupted by user")
            return 130
        except ReplError as e:
            if self.logger:
                self.logger.error(str(e), exc_info=args.verbose)
            else:
                print(f"ERROR: {e}", file=sys.stderr)
            return e.exit_code


def main():
    """Entry point for command line execution."""
    cli = ReplCLI()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
