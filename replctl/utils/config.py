"""
Configuration management for replctl.
Supports YAML and JSON configuration files.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..errors import ConfigConflict

DEFAULT_CONFIG_FILE = Path("replctl.yaml")

# 9.3.0
MIN_SUPPORTED_VERSION_NUM = 90300
DEFAULT_WAL_KEEP_SEGMENTS = 5000
DEFAULT_PRIORITY = 100
DEFAULT_RSYNC_OPTIONS = "--archive --checksum --compress --progress"


class Config:
    """Configuration manager with file and command line override support."""

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to configuration file (YAML or JSON)
        """
        self._config: Dict[str, Any] = {}
        if config_file and config_file.exists():
            self.load_from_file(config_file)

    def load_from_file(self, config_file: Path) -> None:
        """
        Load configuration from file.

        Args:
            config_file: Path to configuration file
        """
        suffix = config_file.suffix.lower()
        with open(config_file, 'r') as f:
            if suffix in ['.yaml', '.yml']:
                self._config = yaml.safe_load(f) or {}
            elif suffix == '.json':
                self._config = json.load(f)
            else:
                raise ConfigConflict(f"Unsupported config file format: {suffix}")

        if not isinstance(self._config, dict):
            raise ConfigConflict(f"Configuration file {config_file} must contain a mapping")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (supports dot notation, e.g., 'ssh.port')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self._config
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        keys = key.split('.')
        config = self._config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value


@dataclass(frozen=True)
class TablespaceMapping:
    """Relocation of one upstream tablespace directory on the new standby."""
    old_dir: str
    new_dir: str


@dataclass(frozen=True)
class ClusterConfig:
    """Process-wide settings, built once at startup and never mutated."""
    cluster_name: str = ""
    node_id: Optional[int] = None
    node_name: str = ""
    conninfo: str = ""
    priority: int = DEFAULT_PRIORITY
    upstream_node_id: Optional[int] = None
    use_replication_slots: bool = False
    min_server_version: int = MIN_SUPPORTED_VERSION_NUM
    wal_keep_segments: int = DEFAULT_WAL_KEEP_SEGMENTS
    pg_bindir: str = ""
    pg_ctl_options: str = ""
    pg_basebackup_options: str = ""
    rsync_options: str = DEFAULT_RSYNC_OPTIONS
    ssh_port: int = 22
    ssh_user: Optional[str] = None
    ssh_key_file: Optional[str] = None
    ssh_options: str = ""
    master_response_timeout: int = 60
    reconnect_interval: int = 10
    promote_check_timeout: int = 60
    promote_check_interval: int = 2
    tablespace_mapping: Tuple[TablespaceMapping, ...] = field(default_factory=tuple)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def schema_name(self) -> str:
        return f"replctl_{self.cluster_name}"

    @property
    def slot_name(self) -> Optional[str]:
        if not self.use_replication_slots or self.node_id is None:
            return None
        return f"replctl_slot_{self.node_id}"

    def require_node(self) -> None:
        """Raise unless this process knows which node it runs for."""
        if self.node_id is None or not self.conninfo or not self.cluster_name:
            raise ConfigConflict(
                "Node information is missing. Check the configuration file "
                "for 'cluster', 'node', 'node_name' and 'conninfo'."
            )

    @classmethod
    def from_config(cls, config: Config) -> "ClusterConfig":
        """Build the immutable settings value from a loaded Config."""
        mappings = []
        for entry in config.get('tablespace_mapping') or []:
            if isinstance(entry, str):
                if '=' not in entry:
                    raise ConfigConflict(f"Invalid tablespace_mapping entry: {entry}")
                old_dir, new_dir = entry.split('=', 1)
            else:
                old_dir, new_dir = entry.get('old_dir'), entry.get('new_dir')
            if not old_dir or not new_dir:
                raise ConfigConflict(f"Invalid tablespace_mapping entry: {entry}")
            mappings.append(TablespaceMapping(old_dir=old_dir, new_dir=new_dir))

        node_id = config.get('node')
        upstream = config.get('upstream_node')
        try:
            return cls(
                cluster_name=config.get('cluster', ""),
                node_id=int(node_id) if node_id is not None else None,
                node_name=config.get('node_name', ""),
                conninfo=config.get('conninfo', ""),
                priority=int(config.get('priority', DEFAULT_PRIORITY)),
                upstream_node_id=int(upstream) if upstream is not None else None,
                use_replication_slots=bool(config.get('use_replication_slots', False)),
                min_server_version=int(config.get('min_server_version', MIN_SUPPORTED_VERSION_NUM)),
                wal_keep_segments=int(config.get('wal_keep_segments', DEFAULT_WAL_KEEP_SEGMENTS)),
                pg_bindir=config.get('pg_bindir', ""),
                pg_ctl_options=config.get('pg_ctl_options', ""),
                pg_basebackup_options=config.get('pg_basebackup_options', ""),
                rsync_options=config.get('rsync_options') or DEFAULT_RSYNC_OPTIONS,
                ssh_port=int(config.get('ssh.port', 22)),
                ssh_user=config.get('ssh.user'),
                ssh_key_file=config.get('ssh.key_file'),
                ssh_options=config.get('ssh.options', ""),
                master_response_timeout=int(config.get('master_response_timeout', 60)),
                reconnect_interval=int(config.get('reconnect_interval', 10)),
                promote_check_timeout=int(config.get('promote_check_timeout', 60)),
                promote_check_interval=int(config.get('promote_check_interval', 2)),
                tablespace_mapping=tuple(mappings),
                log_level=config.get('log_level', "INFO"),
                log_file=config.get('log_file'),
            )
        except (TypeError, ValueError) as e:
            raise ConfigConflict(f"Invalid configuration value: {e}") from e
