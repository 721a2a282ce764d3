"""
Validation of an upstream server's runtime settings before it is used as a
replication source.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple, Union

from .db import PostgresNode
from .errors import ConfigViolation, QueryFailed
from .models import VersionInfo
from .utils.config import ClusterConfig
from .utils.logger import setup_logger
from .version_gate import (REPLICATION_SLOTS_MIN_VERSION, WAL_KEEP_SIZE_MIN_VERSION,
                           WAL_LEVEL_REPLICA_MIN_VERSION)

# pg_settings reports wal_keep_size in MB; one segment is 16MB
WAL_SEGMENT_SIZE_MB = 16

OPERATORS = ('=', '>=', '>')
VALUE_TYPES = ('string', 'integer')

Expected = Union[str, int, Tuple[Union[str, int], ...]]


class SettingStatus(str, Enum):
    SATISFIED = "satisfied"
    VIOLATED = "violated"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class SettingRule:
    """A required value for one server setting."""
    name: str
    operator: str
    expected: Expected
    value_type: str = 'string'
    message: str = ""


def _convert(value, value_type: str):
    if value_type == 'integer':
        return int(value)
    return str(value)


def check_setting(
    node: PostgresNode,
    name: str,
    operator: str,
    expected: Expected,
    value_type: str = 'string',
    logger=None
) -> SettingStatus:
    """
    Compare a live server setting against an expected value.

    Args:
        node: Connected server
        name: Setting name as listed in pg_settings
        operator: One of '=', '>=', '>'; '=' accepts a tuple of allowed values
        expected: Expected value or tuple of values
        value_type: 'string' or 'integer'

    Returns:
        SATISFIED or VIOLATED, or INDETERMINATE when the setting cannot be read
    """
    if operator not in OPERATORS:
        raise ValueError(f"Unsupported operator: {operator}")
    if value_type not in VALUE_TYPES:
        raise ValueError(f"Unsupported value type: {value_type}")

    logger = logger or setup_logger(__name__)
    try:
        raw = node.get_setting(name)
    except QueryFailed as e:
        logger.error(f"Unable to read parameter '{name}': {e}")
        return SettingStatus.INDETERMINATE
    if raw is None:
        logger.error(f"Parameter '{name}' is not known to the server")
        return SettingStatus.INDETERMINATE

    try:
        actual = _convert(raw, value_type)
        if isinstance(expected, tuple):
            if operator != '=':
                raise ValueError(f"Operator '{operator}' does not accept a list of values")
            allowed = [_convert(value, value_type) for value in expected]
        else:
            allowed = [_convert(expected, value_type)]
    except ValueError as e:
        logger.error(f"Unable to compare parameter '{name}': {e}")
        return SettingStatus.INDETERMINATE

    if operator == '=':
        satisfied = actual in allowed
    elif operator == '>=':
        satisfied = actual >= allowed[0]
    else:
        satisfied = actual > allowed[0]

    return SettingStatus.SATISFIED if satisfied else SettingStatus.VIOLATED


class ConfigChecker:
    """Applies the replication rules to an upstream server."""

    def __init__(self, config: ClusterConfig, logger=None):
        self.config = config
        self.logger = logger or setup_logger(__name__)

    def rules_for(self, version: VersionInfo) -> List[SettingRule]:
        """Rules for a server of the given version."""
        rules = []
        if version.num < WAL_LEVEL_REPLICA_MIN_VERSION:
            rules.append(SettingRule(
                'wal_level', '=', 'hot_standby',
                message="parameter 'wal_level' must be set to 'hot_standby'"
            ))
        else:
            rules.append(SettingRule(
                'wal_level', '=', ('replica', 'logical'),
                message="parameter 'wal_level' must be set to 'replica' or 'logical'"
            ))

        if self.config.use_replication_slots:
            if version.num >= REPLICATION_SLOTS_MIN_VERSION:
                rules.append(SettingRule(
                    'max_replication_slots', '>', 0, 'integer',
                    message="parameter 'max_replication_slots' must be set to at least 1 "
                            "to enable replication slots"
                ))
        elif version.num >= WAL_KEEP_SIZE_MIN_VERSION:
            keep_size = self.config.wal_keep_segments * WAL_SEGMENT_SIZE_MB
            rules.append(SettingRule(
                'wal_keep_size', '>=', keep_size, 'integer',
                message=f"parameter 'wal_keep_size' must be set to {keep_size}MB or greater"
            ))
        else:
            rules.append(SettingRule(
                'wal_keep_segments', '>=', self.config.wal_keep_segments, 'integer',
                message=f"parameter 'wal_keep_segments' must be set to "
                        f"{self.config.wal_keep_segments} or greater"
            ))

        rules.extend([
            SettingRule('archive_mode', '=', ('on', 'always'),
                        message="parameter 'archive_mode' must be set to 'on'"),
            SettingRule('hot_standby', '=', 'on',
                        message="parameter 'hot_standby' must be set to 'on'"),
            SettingRule('max_wal_senders', '>', 0, 'integer',
                        message="parameter 'max_wal_senders' must be set to at least 1"),
        ])
        return rules

    def check_upstream_config(
        self,
        node: PostgresNode,
        version: VersionInfo,
        exit_on_error: bool = True
    ) -> Tuple[bool, List[str]]:
        """
        Check every replication rule against an upstream server.

        Args:
            node: Connected upstream server
            version: The server's version
            exit_on_error: Raise on the first failing rule

        Returns:
            Tuple of (config_ok, violation messages)

        Raises:
            ConfigViolation: On the first failure when exit_on_error is True
        """
        config_ok = True
        violations: List[str] = []

        if self.config.use_replication_slots and version.num < REPLICATION_SLOTS_MIN_VERSION:
            message = "server version must be 9.4 or later to enable replication slots"
            if exit_on_error:
                raise ConfigViolation(message)
            self.logger.error(message)
            violations.append(message)
            config_ok = False

        for rule in self.rules_for(version):
            status = check_setting(node, rule.name, rule.operator, rule.expected,
                                   rule.value_type, logger=self.logger)
            if status == SettingStatus.SATISFIED:
                continue

            config_ok = False
            if status == SettingStatus.VIOLATED:
                violations.append(rule.message)
                self.logger.error(rule.message)
                if rule.name in ('wal_keep_segments', 'wal_keep_size') and \
                        version.num >= REPLICATION_SLOTS_MIN_VERSION:
                    self.logger.info(
                        "HINT: replication slots can be used instead of a large WAL "
                        "retention (set 'use_replication_slots' in the configuration file)"
                    )
            if exit_on_error:
                raise ConfigViolation(rule.message if status == SettingStatus.VIOLATED
                                      else f"unable to check parameter '{rule.name}'")

        return config_ok, violations
