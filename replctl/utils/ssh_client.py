"""
SSH client utilities for remote command execution.
Uses Paramiko in batch mode: key or agent authentication only, never a
password prompt.
"""

import shlex
import socket
from pathlib import Path
from typing import Dict, Optional, Tuple

import paramiko

TRUE_BINARIES = ("/bin/true", "/usr/bin/true")

# ssh command line flags that carry a config keyword
FLAG_KEYWORDS = {'-i': 'identityfile', '-p': 'port', '-l': 'user', '-J': 'proxyjump'}


def parse_ssh_options(options: str) -> Dict[str, str]:
    """
    Read ssh command line options into lowercase config keywords.

    Handles "-o Key=Value", "-o Key Value" and the -i, -p, -l and -J flags.
    As with ssh, the first value given for a keyword wins.
    """
    parsed: Dict[str, str] = {}
    words = shlex.split(options or "")
    i = 0
    while i < len(words):
        word = words[i]
        key = value = None
        if word == '-o' and i + 1 < len(words):
            i += 1
            option = words[i]
            if '=' in option:
                key, value = option.split('=', 1)
            else:
                parts = option.split(None, 1)
                if len(parts) == 2:
                    key, value = parts
        elif word in FLAG_KEYWORDS and i + 1 < len(words):
            i += 1
            key, value = FLAG_KEYWORDS[word], words[i]
        if key:
            parsed.setdefault(key.strip().lower(), value.strip())
        i += 1
    return parsed


class SSHClient:
    """Non-interactive SSH client."""

    def __init__(
        self,
        hostname: str,
        username: Optional[str] = None,
        key_file: Optional[Path] = None,
        port: int = 22,
        timeout: int = 30,
        proxy_command: Optional[str] = None
    ):
        """
        Initialize SSH client.

        Args:
            hostname: Remote hostname or IP
            username: SSH username (defaults to the local user)
            key_file: Path to SSH private key file
            port: SSH port
            timeout: Connection timeout in seconds
            proxy_command: Command whose stdin/stdout carry the connection
        """
        self.hostname = hostname
        self.username = username
        self.key_file = key_file
        self.port = port
        self.timeout = timeout
        self.proxy_command = proxy_command
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        """
        Establish SSH connection.

        Raises:
            paramiko.SSHException: If the connection or authentication fails
        """
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        auth_kwargs = {
            'hostname': self.hostname,
            'port': self.port,
            'timeout': self.timeout,
            'allow_agent': True,
            'look_for_keys': True,
        }
        if self.username:
            auth_kwargs['username'] = self.username
        if self.key_file:
            auth_kwargs['key_filename'] = str(self.key_file)

        try:
            if self.proxy_command:
                auth_kwargs['sock'] = paramiko.ProxyCommand(self.proxy_command)
            client.connect(**auth_kwargs)
        except (OSError, socket.timeout) as e:
            client.close()
            raise paramiko.SSHException(f"Failed to connect to {self.hostname}: {e}") from e
        except paramiko.SSHException:
            client.close()
            raise
        self._client = client

    def disconnect(self) -> None:
        """Close SSH connection."""
        if self._client:
            self._client.close()
            self._client = None

    def execute(self, command: str, timeout: Optional[int] = None) -> Tuple[int, str, str]:
        """
        Execute command on remote host.

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        if not self._client:
            self.connect()

        stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        exit_code = stdout.channel.recv_exit_status()
        return exit_code, stdout.read().decode('utf-8'), stderr.read().decode('utf-8')

    def is_reachable(self) -> bool:
        """
        Check that a command can be run on the remote host.

        Runs /bin/true, falling back to /usr/bin/true.
        """
        for binary in TRUE_BINARIES:
            exit_code, _, _ = self.execute(binary, timeout=self.timeout)
            if exit_code == 0:
                return True
        return False

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
