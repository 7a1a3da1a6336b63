import logging
import sys

from typing import Optional

# LogLevel type since logging lib doesn't define its own enum/type for it
LogLevel = int

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_loggers: dict[str, logging.Logger] = {}


def new_logger(
    name: str = 'geckoproc',
    level: LogLevel = logging.INFO,
    outfile: Optional[str] = None,
    stderr: Optional[bool] = True,
) -> logging.Logger:
    """
    Create (or fetch) a configured logger for one module of the converter.

    :param name: The name of the logger, normally the module name.
    :param level: The logging level. Defaults to INFO.
    :param outfile: Optional to set. When set, will log to a file instead of stderr.
    :param stderr: When outfile is not set, log to stderr (the default) or, if
        False, to stdout. Converted JSON goes to stdout, so logs stay off it.
    :return: The configured logger.
    """
    if name in _loggers:
        return _loggers[name]

    log = logging.getLogger(name)
    log.setLevel(level)
    fmt = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    if outfile is not None:
        handler = logging.FileHandler(outfile)
    elif stderr:
        handler = logging.StreamHandler(sys.stderr)
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.NOTSET)
    handler.setFormatter(fmt)

    log.addHandler(handler)
    log.propagate = False

    _loggers[name] = log
    return log


def set_level(level: LogLevel) -> None:
    """Change the level of every logger created through new_logger."""
    for log in _loggers.values():
        log.setLevel(level)


# package-wide logger for code that has no module logger of its own
logger = new_logger('geckoproc')
