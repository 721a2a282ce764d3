"""
External operations invoked by replctl: the backup tool, remote copy,
remote reachability and service control. Each returns the exit status of
the underlying program; callers decide which statuses are fatal.
"""

import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

import paramiko

from .utils.config import ClusterConfig, TablespaceMapping
from .utils.logger import setup_logger
from .utils.ssh_client import SSHClient, parse_ssh_options

BACKUP_LABEL = "replctl base backup"


class ExternalOperations(ABC):
    """Capability object for everything replctl does outside the database."""

    @abstractmethod
    def run_backup(
        self,
        host: Optional[str],
        port: Optional[int],
        user: Optional[str],
        data_directory: str,
        tablespace_mapping: Sequence[TablespaceMapping] = ()
    ) -> int:
        ...

    @abstractmethod
    def remote_reachable(self, host: str) -> bool:
        ...

    @abstractmethod
    def sync_files(
        self,
        host: str,
        remote_path: str,
        local_path: str,
        is_directory: bool = False,
        delete: bool = False
    ) -> int:
        ...

    @abstractmethod
    def service_init(self, data_directory: str, options: str = "") -> int:
        ...

    @abstractmethod
    def service_start(self, data_directory: str) -> int:
        ...

    @abstractmethod
    def service_stop(self, data_directory: str) -> int:
        ...

    @abstractmethod
    def service_restart(self, data_directory: str) -> int:
        ...

    @abstractmethod
    def service_reload(self, data_directory: str) -> int:
        ...

    @abstractmethod
    def service_promote(self, data_directory: str) -> int:
        ...

    @abstractmethod
    def create_role(self, role: str, port: int, admin_user: str, superuser: bool = True) -> int:
        ...

    @abstractmethod
    def create_database(self, database: str, owner: str, port: int, admin_user: str) -> int:
        ...


class LocalExternalOperations(ExternalOperations):
    """Runs PostgreSQL binaries and rsync through subprocess, SSH checks through paramiko."""

    def __init__(self, config: ClusterConfig, logger=None):
        self.config = config
        self.logger = logger or setup_logger(__name__)

    def _binary(self, name: str) -> str:
        if self.config.pg_bindir:
            return str(Path(self.config.pg_bindir) / name)
        return name

    def _run_command(self, cmd: List[str]) -> int:
        """Run a command and return its exit status."""
        self.logger.info(f"Executing: {' '.join(shlex.quote(part) for part in cmd)}")
        try:
            result = subprocess.run(cmd, check=False, text=True)
        except OSError as e:
            self.logger.error(f"Unable to execute {cmd[0]}: {e}")
            return 127
        if result.returncode != 0:
            self.logger.debug(f"{cmd[0]} exited with status {result.returncode}")
        return result.returncode

    def _pg_ctl(self, action: str, data_directory: str, *extra: str) -> int:
        cmd = [self._binary("pg_ctl")]
        cmd.extend(shlex.split(self.config.pg_ctl_options))
        cmd.extend(["-w", "-D", data_directory])
        cmd.extend(extra)
        cmd.append(action)
        return self._run_command(cmd)

    def _rsh(self) -> str:
        parts = ["ssh", "-o", "BatchMode=yes", "-p", str(self.config.ssh_port)]
        if self.config.ssh_key_file:
            parts.extend(["-i", self.config.ssh_key_file])
        parts.extend(shlex.split(self.config.ssh_options))
        return ' '.join(shlex.quote(part) for part in parts)

    def run_backup(self, host, port, user, data_directory, tablespace_mapping=()) -> int:
        cmd = [self._binary("pg_basebackup"), "-l", BACKUP_LABEL, "-D", data_directory]
        if host:
            cmd.extend(["-h", host])
        if port:
            cmd.extend(["-p", str(port)])
        if user:
            cmd.extend(["-U", user])
        for mapping in tablespace_mapping:
            cmd.extend(["-T", f"{mapping.old_dir}={mapping.new_dir}"])
        cmd.extend(shlex.split(self.config.pg_basebackup_options))
        return self._run_command(cmd)

    def _ssh_client(self, host: str) -> SSHClient:
        """
        SSH client set up like the ssh command rsync runs.

        Explicit ssh.port, ssh.user and ssh.key_file settings come first, as they
        precede ssh.options on that command line. From ssh.options the client
        honours IdentityFile, User, ConnectTimeout, ProxyCommand and ProxyJump.
        """
        options = parse_ssh_options(self.config.ssh_options)
        key_file = self.config.ssh_key_file or options.get('identityfile')
        username = self.config.ssh_user or options.get('user')

        timeout = self.config.master_response_timeout
        if options.get('connecttimeout', '').isdigit():
            timeout = int(options['connecttimeout'])

        proxy_command = options.get('proxycommand')
        jump = options.get('proxyjump')
        if not proxy_command and jump and jump.lower() != 'none':
            proxy_command = f"ssh -o BatchMode=yes -W %h:%p {shlex.quote(jump)}"
        if proxy_command and proxy_command.lower() != 'none':
            proxy_command = (proxy_command.replace('%h', host)
                             .replace('%p', str(self.config.ssh_port))
                             .replace('%r', username or ''))
        else:
            proxy_command = None

        return SSHClient(
            host,
            username=username,
            key_file=Path(os.path.expanduser(key_file)) if key_file else None,
            port=self.config.ssh_port,
            timeout=timeout,
            proxy_command=proxy_command
        )

    def remote_reachable(self, host: str) -> bool:
        client = self._ssh_client(host)
        try:
            with client:
                return client.is_reachable()
        except paramiko.SSHException as e:
            self.logger.debug(f"SSH check against {host} failed: {e}")
            return False

    def sync_files(self, host, remote_path, local_path, is_directory=False, delete=False) -> int:
        cmd = ["rsync"]
        cmd.extend(shlex.split(self.config.rsync_options))
        cmd.append(f"--rsh={self._rsh()}")
        if delete:
            cmd.append("--delete")
        host_string = f"{self.config.ssh_user}@{host}" if self.config.ssh_user else host
        source = f"{host_string}:{remote_path}"
        if is_directory:
            source = source.rstrip('/') + '/'
        cmd.extend([source, local_path])
        return self._run_command(cmd)

    def service_init(self, data_directory, options="") -> int:
        extra = ["-o", options] if options else []
        return self._pg_ctl("initdb", data_directory, *extra)

    def service_start(self, data_directory) -> int:
        return self._pg_ctl("start", data_directory)

    def service_stop(self, data_directory) -> int:
        return self._pg_ctl("stop", data_directory, "-m", "fast")

    def service_restart(self, data_directory) -> int:
        return self._pg_ctl("restart", data_directory, "-m", "fast")

    def service_reload(self, data_directory) -> int:
        return self._pg_ctl("reload", data_directory)

    def service_promote(self, data_directory) -> int:
        # promote returns as soon as the signal is sent
        cmd = [self._binary("pg_ctl")]
        cmd.extend(shlex.split(self.config.pg_ctl_options))
        cmd.extend(["-D", data_directory, "promote"])
        return self._run_command(cmd)

    def create_role(self, role, port, admin_user, superuser=True) -> int:
        cmd = [self._binary("createuser"), "-p", str(port), "-U", admin_user, "--login"]
        cmd.append("--superuser" if superuser else "--no-superuser")
        cmd.append(role)
        return self._run_command(cmd)

    def create_database(self, database, owner, port, admin_user) -> int:
        return self._run_command([
            self._binary("createdb"), "-p", str(port), "-U", admin_user, f"--owner={owner}", database
        ])
