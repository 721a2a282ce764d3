"""
Writes the settings that make a data directory start as a standby of a given
upstream. Servers before PostgreSQL 12 read recovery.conf; later ones read
standby.signal plus settings in postgresql.auto.conf.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .errors import ConfigConflict
from .models import VersionInfo
from .utils.logger import setup_logger
from .version_gate import RECOVERY_SIGNAL_MIN_VERSION

RECOVERY_FILE = "recovery.conf"
STANDBY_SIGNAL_FILE = "standby.signal"
AUTO_CONF_FILE = "postgresql.auto.conf"
DEFAULT_PORT = 5432

APPLY_DELAY_PATTERN = re.compile(r'^\d+(ms|s|min|h|d)?$')


def validate_apply_delay(value: str) -> str:
    """Accept an integer with an optional ms, s, min, h or d unit."""
    if not APPLY_DELAY_PATTERN.match(value):
        raise ConfigConflict(
            f"Invalid value for recovery_min_apply_delay: '{value}' "
            "(expected an integer optionally followed by ms, s, min, h or d)"
        )
    return value


def _conninfo_value(value) -> str:
    text = str(value)
    if text and not re.search(r"[\s'\\]", text):
        return text
    escaped = text.replace('\\', '\\\\').replace("'", "\\'")
    return f"'{escaped}'"


def build_primary_conninfo(
    host: Optional[str],
    port: Optional[int],
    user: Optional[str],
    application_name: str,
    env: Optional[Mapping[str, str]] = None
) -> str:
    """
    Connection string a standby uses to stream from its upstream.

    The password is taken from PGPASSWORD only and is never read from the
    configuration file.
    """
    env = os.environ if env is None else env
    params = [('port', port or DEFAULT_PORT)]
    if host:
        params.append(('host', host))
    if user:
        params.append(('user', user))
    password = env.get('PGPASSWORD')
    if password:
        params.append(('password', password))
    if application_name:
        params.append(('application_name', application_name))
    return ' '.join(f"{key}={_conninfo_value(value)}" for key, value in params)


def _quote(value: str) -> str:
    """Quote a value for postgresql.conf; the server reads backslash escapes inside quotes."""
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


def recovery_settings(
    primary_conninfo: str,
    apply_delay: Optional[str] = None,
    slot_name: Optional[str] = None
) -> Dict[str, Optional[str]]:
    """Recovery settings in file order; None marks a setting to leave out."""
    if apply_delay is not None:
        validate_apply_delay(apply_delay)
    return {
        'primary_conninfo': primary_conninfo,
        'recovery_target_timeline': 'latest',
        'recovery_min_apply_delay': apply_delay,
        'primary_slot_name': slot_name,
    }


def render_recovery_conf(settings: Mapping[str, Optional[str]]) -> str:
    lines = [f"standby_mode = {_quote('on')}"]
    lines.extend(f"{key} = {_quote(value)}" for key, value in settings.items() if value is not None)
    return '\n'.join(lines) + '\n'


def merge_settings(existing: str, settings: Mapping[str, Optional[str]]) -> str:
    """
    Replace or append settings in a postgresql.conf style text.

    Settings mapped to None are removed.
    """
    lines: List[str] = existing.splitlines()
    for key, value in settings.items():
        pattern = re.compile(rf'^\s*#?\s*{re.escape(key)}\s*=')
        found = False
        kept = []
        for line in lines:
            if pattern.match(line):
                if value is not None and not found:
                    kept.append(f"{key} = {_quote(value)}")
                found = True
                continue
            kept.append(line)
        if not found and value is not None:
            kept.append(f"{key} = {_quote(value)}")
        lines = kept
    return '\n'.join(lines) + '\n'


def write_recovery_config(
    data_directory: str,
    version: VersionInfo,
    primary_conninfo: str,
    apply_delay: Optional[str] = None,
    slot_name: Optional[str] = None,
    logger=None
) -> Path:
    """
    Point a data directory at an upstream.

    Args:
        data_directory: Standby data directory
        version: Version of the standby's server
        primary_conninfo: Connection string of the upstream
        apply_delay: Optional recovery_min_apply_delay value
        slot_name: Optional replication slot on the upstream

    Returns:
        The file holding the settings
    """
    logger = logger or setup_logger(__name__)
    settings = recovery_settings(primary_conninfo, apply_delay, slot_name)
    datadir = Path(data_directory)

    if version.num < RECOVERY_SIGNAL_MIN_VERSION:
        target = datadir / RECOVERY_FILE
        target.write_text(render_recovery_conf(settings))
        logger.info(f"Recovery parameters written to {target}")
        return target

    (datadir / STANDBY_SIGNAL_FILE).touch()
    target = datadir / AUTO_CONF_FILE
    existing = target.read_text() if target.exists() else ""
    target.write_text(merge_settings(existing, settings))
    logger.info(f"Standby signal and recovery parameters written to {datadir}")
    return target
