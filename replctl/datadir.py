"""
Destination directory preparation for clone and witness creation.
"""

from pathlib import Path

from .errors import ConfigConflict
from .utils.logger import setup_logger

DATADIR_MODE = 0o700
POSTMASTER_PID = "postmaster.pid"
PG_VERSION = "PG_VERSION"


def is_pg_dir(path: Path) -> bool:
    return (path / PG_VERSION).exists()


def prepare_data_directory(path: str, force: bool = False, logger=None) -> Path:
    """
    Make sure a directory can receive a new data directory.

    An absent directory is created, an empty one is reused. A non-empty
    directory is only accepted with force, and never while a server is
    running in it.

    Raises:
        ConfigConflict: If the directory cannot be used
    """
    logger = logger or setup_logger(__name__)
    datadir = Path(path)

    try:
        if not datadir.exists():
            logger.info(f"Creating directory {datadir}")
            datadir.mkdir(mode=DATADIR_MODE, parents=True)
            return datadir

        if not datadir.is_dir():
            raise ConfigConflict(f"{datadir} exists and is not a directory")

        if not any(datadir.iterdir()):
            logger.info(f"Checking and correcting permissions on existing directory {datadir}")
            datadir.chmod(DATADIR_MODE)
            return datadir

        if (datadir / POSTMASTER_PID).exists():
            raise ConfigConflict(
                f"A PostgreSQL server appears to be running in {datadir}; stop it first"
            )

        if not force:
            raise ConfigConflict(
                f"Directory {datadir} exists but is not empty; use --force to overwrite it"
            )

        if is_pg_dir(datadir):
            logger.warning(f"{datadir} is a PostgreSQL data directory and will be overwritten")
        else:
            logger.warning(f"Directory {datadir} is not empty and will be overwritten")
        datadir.chmod(DATADIR_MODE)
        return datadir
    except OSError as e:
        raise ConfigConflict(f"Unable to prepare directory {datadir}: {e}") from e
