"""
Configuration loader for the DB4S country stats generator

Reads the PostgreSQL connection settings from a TOML file. Copy
config.example.toml to ~/.db4s/db4s_country_stats_generator.toml (or point
CONFIG_FILE at it) and fill in your credentials.
"""

import os
import tomllib
from collections import namedtuple

from country_stats_errors import ConfigError


CONFIG_ENV_VAR = "CONFIG_FILE"
CONFIG_DIR = ".db4s"
CONFIG_NAME = "db4s_country_stats_generator.toml"

# Required [pg] keys and their expected types
PG_KEYS = {
    "database": str,
    "num_connections": int,
    "port": int,
    "password": str,
    "server": str,
    "ssl": bool,
    "username": str,
}

PgConfig = namedtuple(
    "PgConfig",
    ["server", "port", "username", "password", "database", "ssl",
     "num_connections", "debug"],
)


def config_file_path(environ=None):
    """
    Work out which config file to read

    Args:
        environ (dict): Environment to look in, defaults to os.environ

    Returns:
        str: Path of the configuration file
    """
    if environ is None:
        environ = os.environ

    override = environ.get(CONFIG_ENV_VAR)
    if override:
        return override

    user_home = os.path.expanduser("~")
    if user_home == "~" or not user_home:
        raise ConfigError("User home directory couldn't be determined")
    return os.path.join(user_home, CONFIG_DIR, CONFIG_NAME)


def _check_value(section, key, expected):
    value = section[key]
    # bool is a subclass of int, don't accept it for the numeric settings
    if expected is int and isinstance(value, bool):
        raise ConfigError(f"[pg] {key} must be an integer, got {value!r}")
    if not isinstance(value, expected):
        raise ConfigError(
            f"[pg] {key} must be of type {expected.__name__}, got {value!r}"
        )
    return value


def parse_config(data):
    """
    Build a PgConfig from an already decoded TOML document

    Args:
        data (dict): Decoded TOML document

    Returns:
        PgConfig: Connection settings
    """
    section = data.get("pg")
    if not isinstance(section, dict):
        raise ConfigError("The config does not have a [pg] section")

    missing = [key for key in PG_KEYS if key not in section]
    if missing:
        raise ConfigError(f"[pg] section is missing: {', '.join(missing)}")

    values = {key: _check_value(section, key, kind) for key, kind in PG_KEYS.items()}

    if values["num_connections"] < 1:
        raise ConfigError("[pg] num_connections must be at least 1")

    debug = data.get("debug", True)
    if not isinstance(debug, bool):
        raise ConfigError(f"debug must be true or false, got {debug!r}")

    return PgConfig(
        server=values["server"],
        port=values["port"],
        username=values["username"],
        password=values["password"],
        database=values["database"],
        ssl=values["ssl"],
        num_connections=values["num_connections"],
        debug=debug,
    )


def load_config(path=None):
    """
    Read and validate the configuration file

    Args:
        path (str): Config file to read, resolved with config_file_path()
            when not given

    Returns:
        PgConfig: Connection settings
    """
    if path is None:
        path = config_file_path()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    return parse_config(data)
