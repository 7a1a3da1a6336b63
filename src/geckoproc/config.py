import logging
import os

import toml

from geckoproc.configured_logger import new_logger

logger = new_logger('config')

CONFIG_ENV_VAR = 'GECKOPROC_CONFIG'

DEFAULT_CONFIG = {
    'log_level': 'INFO',
    # Verify the column lengths of every table of every converted thread.
    'check_invariants': True,
    # Indentation of the JSON written by the command line tool.
    'indent': None,
}

LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARN': logging.WARNING,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}


def load_config():
    config = dict(DEFAULT_CONFIG)

    config_file = os.environ.get(CONFIG_ENV_VAR, '')
    if config_file:
        try:
            with open(config_file) as f:
                new_config = toml.load(f)
                config.update(new_config)
                logger.debug(f"Load config from {config_file}, config {config}")
        except FileNotFoundError:
            logger.warning(
                f"Failed to load config file {config_file}, use default config {config}")
    return config


def log_level(config) -> int:
    level = str(config.get('log_level', 'INFO')).upper()
    if level not in LOG_LEVELS:
        logger.warning(f"Unknown log level {level!r}, using INFO")
        return logging.INFO
    return LOG_LEVELS[level]
